"""Runs parse -> extract -> search -> rank in one call.

Stages run strictly in order and any stage error ends the run; nothing is
retried and no partial result is returned.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from trialmatch.models.clinical import ClinicalSummary, ExtractedFacts
from trialmatch.models.trial import RankedTrial, SearchFilters
from trialmatch.stages.document_parser import DocumentParser
from trialmatch.stages.fact_extractor import FactExtractor
from trialmatch.stages.trial_ranker import TrialRanker
from trialmatch.stages.trial_searcher import TrialSearcher

logger = logging.getLogger(__name__)


class PipelineResult(BaseModel):
    summary: ClinicalSummary
    facts: ExtractedFacts
    trials: list[dict[str, Any]] = Field(default_factory=list)
    rankings: list[RankedTrial] = Field(default_factory=list)


class TrialMatchPipeline:
    def __init__(
        self,
        parser: DocumentParser,
        extractor: FactExtractor,
        searcher: TrialSearcher,
        ranker: TrialRanker,
    ):
        self.parser = parser
        self.extractor = extractor
        self.searcher = searcher
        self.ranker = ranker

    async def run(self, document: str, filters: SearchFilters | None = None) -> PipelineResult:
        filters = filters or SearchFilters()

        summary = await self.parser.parse(document)
        logger.info("Parsed document: %d conditions", len(summary.conditions))

        facts = await self.extractor.extract(summary.model_dump())
        trials = await self.searcher.search(facts, filters)
        if not trials:
            logger.info("No trials found matching criteria")
            return PipelineResult(summary=summary, facts=facts)

        rankings = await self.ranker.rank(facts, trials)
        rankings.sort(key=lambda r: r.matchPercentage, reverse=True)
        return PipelineResult(summary=summary, facts=facts, trials=trials, rankings=rankings)
