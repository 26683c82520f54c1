from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    anthropic_api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"
    host: str = "0.0.0.0"
    port: int = 8100
    log_level: str = "info"

    parse_temperature: float = 0.2
    parse_max_tokens: int = 2048
    extract_max_tokens: int = 2048
    rank_max_tokens: int = 4096

    ctgov_base_url: str = "https://clinicaltrials.gov/api/v2"
    ctgov_page_size: int = 50
    ctgov_timeout_seconds: float = 30.0
    geocoding_base_url: str = "https://geocoding-api.open-meteo.com/v1"
    geocoding_country: str = "US"

    age_filter_enabled: bool = False
    bypass_llm: bool = False
    cors_origins: list[str] = ["*"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
