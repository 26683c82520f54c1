"""HTTP endpoints for the four pipeline stages plus the combined run.

Each stage route reads the raw body itself so that an empty body is always
a 400, whatever content type the caller declared.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError

from trialmatch.errors import BadRequest, ConfigurationError, TrialMatchError
from trialmatch.models.trial import MatchRequest, RankRequest, SearchRequest
from trialmatch.stages.document_parser import read_document

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/functions/v1", tags=["pipeline"])

SNIPPET_CHARS = 200

STAGE_ROUTES = ("parse-ccd", "extract-facts", "search-trials", "rank-summarize-trials", "match")


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw or not raw.strip():
        raise BadRequest("Missing request body")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BadRequest("Invalid JSON in request body") from exc
    if payload is None:
        raise BadRequest("Missing request body")
    return payload


def _validate(model: type[BaseModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise BadRequest(f"Invalid request: {exc.error_count()} validation error(s): {exc}") from exc


def _failure(exc: Exception, prefix: str) -> JSONResponse:
    if isinstance(exc, (BadRequest, ConfigurationError)):
        logger.warning("%s: %s", prefix, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)
    if isinstance(exc, TrialMatchError):
        logger.error("%s: %s", prefix, exc.message)
        return JSONResponse({"error": f"{prefix}: {exc.message}"}, status_code=exc.status_code)
    logger.exception("%s: unexpected error", prefix)
    return JSONResponse(
        {"error": "An unexpected error occurred.", "details": str(exc)},
        status_code=500,
    )


@router.options("/{stage}")
async def preflight(stage: str) -> PlainTextResponse:
    if stage not in STAGE_ROUTES:
        return PlainTextResponse("Not Found", status_code=404)
    return PlainTextResponse("ok")


@router.post("/parse-ccd")
async def parse_ccd(request: Request):
    parser = request.app.state.document_parser
    try:
        document = read_document(await request.body(), request.headers.get("content-type", ""))
    except BadRequest as exc:
        return _failure(exc, "Document parsing failed")

    try:
        summary = await parser.parse(document)
    except (BadRequest, ConfigurationError) as exc:
        return _failure(exc, "Document parsing failed")
    except TrialMatchError as exc:
        logger.error("Error processing document with LLM: %s", exc.message)
        return _parse_failure(document, exc.message)
    except Exception as exc:
        logger.exception("Unexpected error while parsing document")
        return _parse_failure(document, str(exc))
    return summary.model_dump()


def _parse_failure(document: str, details: str) -> JSONResponse:
    # Only the head of the document goes back, for debugging the request.
    snippet = document[:SNIPPET_CHARS] + ("..." if len(document) > SNIPPET_CHARS else "")
    return JSONResponse(
        {
            "error": "Error processing document with LLM",
            "details": details,
            "documentSnippet": snippet,
        },
        status_code=500,
    )


@router.post("/extract-facts")
async def extract_facts(request: Request):
    extractor = request.app.state.fact_extractor
    try:
        payload = await _read_json(request)
        facts = await extractor.extract(payload)
    except Exception as exc:
        return _failure(exc, "Fact extraction failed")
    return facts.model_dump()


@router.post("/search-trials")
async def search_trials(request: Request):
    searcher = request.app.state.trial_searcher
    try:
        body: SearchRequest = _validate(SearchRequest, await _read_json(request))
        trials = await searcher.search(body.extractedFacts, body.filters)
    except Exception as exc:
        return _failure(exc, "Trial search failed")
    return trials


@router.post("/rank-summarize-trials")
async def rank_summarize_trials(request: Request):
    ranker = request.app.state.trial_ranker
    try:
        body: RankRequest = _validate(RankRequest, await _read_json(request))
        ranked = await ranker.rank(body.extractedFacts, body.trials)
    except Exception as exc:
        return _failure(exc, "Ranking/summarization failed")
    return [r.model_dump() for r in ranked]


@router.post("/match")
async def match(request: Request):
    """Run every stage server side for callers without their own orchestrator."""
    pipeline = request.app.state.pipeline
    try:
        body: MatchRequest = _validate(MatchRequest, await _read_json(request))
        if not body.document.strip():
            raise BadRequest("Empty document")
        result = await pipeline.run(body.document, body.filters)
    except Exception as exc:
        return _failure(exc, "Trial matching failed")
    return result.model_dump(mode="json")
