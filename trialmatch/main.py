from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trialmatch.api.routes import router as pipeline_router
from trialmatch.clients.clinical_trials import ClinicalTrialsClient
from trialmatch.clients.geocoding import PostalCodeGeocoder
from trialmatch.clients.llm import LLMClient
from trialmatch.config import Settings, settings
from trialmatch.pipeline import TrialMatchPipeline
from trialmatch.stages.document_parser import DocumentParser
from trialmatch.stages.fact_extractor import FactExtractor
from trialmatch.stages.trial_ranker import TrialRanker
from trialmatch.stages.trial_searcher import TrialSearcher

logger = logging.getLogger(__name__)

CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def create_app(config: Settings | None = None, llm: LLMClient | None = None) -> FastAPI:
    """Build the app with every stage wired from ``config``.

    Stages hold their collaborators from construction on; nothing reads
    process-wide settings after this point.
    """
    config = config or settings
    app = FastAPI(title="TrialMatch Intake", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=CORS_HEADERS,
    )

    llm = llm or LLMClient(config.anthropic_api_key, config.model)
    if not llm.configured:
        logger.warning("ANTHROPIC_API_KEY not set - LLM stages will fail with a configuration error")

    app.state.settings = config
    app.state.document_parser = DocumentParser(
        llm,
        temperature=config.parse_temperature,
        max_tokens=config.parse_max_tokens,
        bypass_llm=config.bypass_llm,
    )
    app.state.fact_extractor = FactExtractor(llm, max_tokens=config.extract_max_tokens)
    app.state.trial_searcher = TrialSearcher(
        ClinicalTrialsClient(config.ctgov_base_url, timeout=config.ctgov_timeout_seconds),
        geocoder=PostalCodeGeocoder(
            config.geocoding_base_url,
            country_code=config.geocoding_country,
            timeout=config.ctgov_timeout_seconds,
        ),
        page_size=config.ctgov_page_size,
        age_filter_enabled=config.age_filter_enabled,
    )
    app.state.trial_ranker = TrialRanker(llm, max_tokens=config.rank_max_tokens)
    app.state.pipeline = TrialMatchPipeline(
        app.state.document_parser,
        app.state.fact_extractor,
        app.state.trial_searcher,
        app.state.trial_ranker,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "trialmatch-intake", "llm_configured": llm.configured}

    app.include_router(pipeline_router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    run()
