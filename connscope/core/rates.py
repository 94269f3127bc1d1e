# ==============================================================================
# FILE: core/rates.py
# PURPOSE: Instantaneous byte/s rates from cumulative counters.
# ==============================================================================
import logging
from typing import Dict, Iterable, Tuple

from .data_models import RateSample

log = logging.getLogger("connscope.rates")


class RateEstimator:
    """
    Finite-difference rate estimation keyed by entity id.

    Holds the previous {upload, download, time} per id. A tick is a batch
    of estimate() calls; ids not estimated during the latest tick are
    dropped by tick() or retain().
    """

    def __init__(self):
        self._totals: Dict[str, Tuple[int, int, float]] = {}
        self.rates: Dict[str, RateSample] = {}

    def __contains__(self, entity_id) -> bool:
        return entity_id in self._totals

    def __len__(self) -> int:
        return len(self._totals)

    def estimate(self, entity_id: str, upload: int, download: int, now: float) -> RateSample:
        """Rate since the previous observation of `entity_id`; `now` is epoch ms."""
        prev = self._totals.get(entity_id)
        sample = RateSample()
        if prev is not None:
            prev_up, prev_down, prev_time = prev
            elapsed = (now - prev_time) / 1000
            if elapsed > 0:
                if upload < prev_up or download < prev_down:
                    log.debug("counter for %s went backwards, clamping rate to 0", entity_id)
                sample = RateSample(
                    upload=max(0, upload - prev_up) / elapsed,
                    download=max(0, download - prev_down) / elapsed,
                )
        self._totals[entity_id] = (upload, download, now)
        self.rates[entity_id] = sample
        return sample

    def retain(self, entity_ids: Iterable[str]):
        keep = set(entity_ids)
        for entity_id in [k for k in self._totals if k not in keep]:
            del self._totals[entity_id]
            self.rates.pop(entity_id, None)

    def forget(self, entity_ids: Iterable[str]):
        for entity_id in entity_ids:
            self._totals.pop(entity_id, None)
            self.rates.pop(entity_id, None)

    def tick(self, entries: Iterable[Tuple[str, int, int]], now: float) -> Dict[str, RateSample]:
        """Estimates every (id, upload, download) entry and drops the rest."""
        seen = []
        for entity_id, upload, download in entries:
            self.estimate(entity_id, upload, download, now)
            seen.append(entity_id)
        self.retain(seen)
        return dict(self.rates)

    def get(self, entity_id: str) -> RateSample:
        return self.rates.get(entity_id) or RateSample()

    def reset(self):
        self._totals.clear()
        self.rates.clear()
