"""
Opportunity evaluator. Scores candidate batches with the scoring model and
returns the survivors ranked best-first.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Protocol, Sequence

from scanner.models import Opportunity

logger = logging.getLogger(__name__)


class Scorer(Protocol):
    def score(self, features) -> float: ...


class OpportunityEvaluator:
    """
    Attaches a model score to every candidate, drops candidates scoring at or
    below min_score, and sorts the rest by descending score. Ties keep
    arrival order.
    """

    def __init__(self, model: Scorer, min_score: float) -> None:
        self._model = model
        self._min_score = min_score

    async def _score(self, opp: Opportunity) -> Opportunity:
        score = await asyncio.to_thread(self._model.score, opp.features)
        return replace(opp, score=score)

    async def evaluate_and_rank(self, candidates: Sequence[Opportunity]) -> list[Opportunity]:
        if not candidates:
            return []
        scored = await asyncio.gather(*(self._score(opp) for opp in candidates))
        kept = [opp for opp in scored if opp.score > self._min_score]
        # sorted() is stable, so equal scores stay in arrival order
        ranked = sorted(kept, key=lambda opp: -opp.score)
        logger.debug(
            "Evaluated %d candidates: %d above score %.3f",
            len(candidates), len(ranked), self._min_score,
        )
        return ranked
