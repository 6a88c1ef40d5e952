"""Thompson Sampling over policy variants.

Each variant carries Beta(alpha, beta) parameters. Selection draws one sample
per candidate and picks the largest; candidates are visited in sorted variant
order and the first maximum wins, so a seeded random source gives
reproducible picks.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .errors import bad_request
from .records import Outcome, VariantStats
from .reward import RewardResult

logger = logging.getLogger("adl_gateway.bandit")


class VariantStatsRepository(Protocol):
    def ensure_variant_stats(self, variants: Iterable[str]) -> List[VariantStats]: ...

    def increment_variant_stats(self, variant: str, success: bool) -> VariantStats: ...

    def upsert_outcome(
        self,
        decision_id: str,
        metrics: Dict[str, Any],
        correlation_id: Optional[str],
        variant: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> Outcome: ...


class BanditRouter:
    def __init__(
        self,
        stats_repo: VariantStatsRepository,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
    ):
        self.stats_repo = stats_repo
        self.rng = rng if rng is not None else random.Random(seed)
        # Guards rng across worker threads.
        self._lock = threading.Lock()

    def select_variant(self, candidates: Sequence[VariantStats]) -> str:
        if not candidates:
            raise bad_request("no candidate variants to select from")
        best_variant = ""
        best_sample = -1.0
        with self._lock:
            for stats in sorted(candidates, key=lambda s: s.variant):
                sample = self.rng.betavariate(stats.alpha, stats.beta)
                if sample > best_sample:
                    best_variant, best_sample = stats.variant, sample
        return best_variant

    def choose(self, variants: Iterable[str]) -> str:
        """Load (creating at 1/1 where unseen) the stats for `variants` and select one."""
        candidates = self.stats_repo.ensure_variant_stats(variants)
        chosen = self.select_variant(candidates)
        logger.debug("bandit chose %s among %d candidates", chosen, len(candidates))
        return chosen

    def update(self, variant: str, reward: Optional[RewardResult]) -> Optional[VariantStats]:
        if reward is None:
            return None
        stats = self.stats_repo.increment_variant_stats(variant, reward.success)
        logger.info(
            "bandit update %s success=%s alpha=%d beta=%d",
            variant, reward.success, stats.alpha, stats.beta,
        )
        return stats

    def settle_outcome(
        self,
        decision_id: str,
        variant: str,
        reward: Optional[RewardResult],
        metrics: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Outcome:
        """Store a decision's outcome and count its reward at most once.

        Unlike `update`, a repeated report for the same decision leaves the
        stats unchanged, and a report whose result flips moves the count.
        """
        success = None if reward is None else reward.success
        outcome = self.stats_repo.upsert_outcome(
            decision_id, metrics, correlation_id, variant=variant, success=success
        )
        logger.info("bandit settled %s decision=%s success=%s", variant, decision_id, success)
        return outcome
