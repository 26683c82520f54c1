"""Thin async wrapper around the Anthropic Messages API.

Two call shapes are used by the pipeline:

* ``complete_text`` asks for a free-text answer (the document parser expects
  a JSON object inside it).
* ``complete_structured`` forces a single tool call whose ``input_schema`` is
  the declared output schema, so the answer arrives as an already decoded
  JSON object.

Every failure is translated into the errors in ``trialmatch.errors``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import anthropic

from trialmatch.errors import (
    ConfigurationError,
    UpstreamEmpty,
    UpstreamMalformed,
    UpstreamRequestFailure,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?\s*```$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json fence and a trailing ``` fence, if present."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_json_text(text: str, *, what: str = "LLM") -> Any:
    """Decode JSON from model text, logging the raw text when it is not valid."""
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("%s returned invalid JSON (%s). Raw text: %s", what, exc, text)
        raise UpstreamMalformed(f"{what} returned invalid JSON: {exc}") from exc


class LLMClient:
    """Holds the API key and model for one app instance.

    The SDK client is created lazily so that a missing key only fails the
    requests that need the LLM, before anything is sent.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self._api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                logger.error("Anthropic API key is not configured")
                raise ConfigurationError()
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def _create(self, **kwargs: Any) -> Any:
        client = self._get_client()
        try:
            message = await client.messages.create(model=self.model, **kwargs)
        except anthropic.APIStatusError as exc:
            body = exc.response.text if exc.response is not None else ""
            logger.error("LLM API HTTP error %s: %s", exc.status_code, body)
            raise UpstreamRequestFailure(
                f"LLM API request failed with status {exc.status_code}: {exc.message}",
                upstream_status=exc.status_code,
                body=body,
            ) from exc
        except anthropic.APIConnectionError as exc:
            logger.error("LLM API connection error: %s", exc)
            raise UpstreamRequestFailure(f"LLM API request failed: {exc}") from exc

        if getattr(message, "stop_reason", None) == "max_tokens":
            logger.warning("LLM response hit the max_tokens limit and may be truncated")
        return message

    async def complete_text(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        message = await self._create(**kwargs)
        text = "".join(
            block.text for block in (message.content or []) if block.type == "text"
        ).strip()
        if not text:
            logger.error("LLM returned no text content: %r", message)
            raise UpstreamEmpty("Could not find generated text in LLM response.")
        return text

    async def complete_structured(
        self,
        prompt: str,
        *,
        tool_name: str,
        description: str,
        schema: dict[str, Any],
        max_tokens: int,
    ) -> dict[str, Any]:
        message = await self._create(
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            tools=[{"name": tool_name, "description": description, "input_schema": schema}],
            tool_choice={"type": "tool", "name": tool_name},
        )
        for block in message.content or []:
            if block.type != "tool_use" or block.name != tool_name:
                continue
            if not isinstance(block.input, dict):
                logger.error("LLM tool input is not an object: %r", block.input)
                raise UpstreamMalformed("LLM returned structured output that is not an object.")
            return block.input

        logger.error("LLM returned no %s tool call: %r", tool_name, message)
        raise UpstreamEmpty("LLM returned an empty or invalid response.")
