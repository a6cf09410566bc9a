"""
MAMS Decay & Eviction
=====================
Erodes unused memory and prunes what falls below relevance.

    new_score = score * decay_rate ** hours_since_last_access

Below MIN_RETENTION_SCORE the chunk is deleted. Decay never touches
last_accessed. It stamps decayed_at instead, and each pass only applies
the hours since max(last_accessed, decayed_at). Running it twice back to
back changes nothing the second time, and the score after T idle hours
is the same whether decay ran once or every hour.

Not safe to run concurrently with itself: two overlapping scans would
apply the same elapsed window twice. The daemon serialises runs.
"""

import math
import time
from typing import Optional

from mams.config import BUCKET_NAMES, DECAY_DEADLINE_SECONDS, MIN_RETENTION_SCORE
from mams.log import log, timed
from mams.models import DecayResult
from mams.store import MemoryStore, from_iso


def decayed_score(score: float, decay_rate: float, hours: float) -> float:
    """Continuous exponential decay with a per-hour retention factor."""
    return score * math.pow(decay_rate, max(0.0, hours))


def _anchor(row):
    """Point in time decay is measured from: last access or last decay, whichever is later."""
    last_accessed = from_iso(row["last_accessed"])
    if row["decayed_at"]:
        return max(last_accessed, from_iso(row["decayed_at"]))
    return last_accessed


class DecayScheduler:

    def __init__(self, store: MemoryStore, min_score: float = MIN_RETENTION_SCORE):
        self.store = store
        self.min_score = min_score

    def apply_decay(self, deadline_seconds: Optional[float] = DECAY_DEADLINE_SECONDS) -> DecayResult:
        """
        Decay every chunk, bucket by bucket.

        Each bucket's updates and deletions commit together. A chunk that
        can't be decayed is logged and counted in `errors`; the scan goes on.
        If the deadline passes, the scan stops after committing the current
        bucket and reports timed_out.
        """
        result = DecayResult()
        started = time.monotonic()
        now = self.store.now()

        with timed("apply_decay"):
            for bucket_name in BUCKET_NAMES:
                updates: list[tuple[int, float]] = []
                deletions: list[int] = []
                for row in self.store.decay_rows(bucket_name):
                    if deadline_seconds is not None and time.monotonic() - started > deadline_seconds:
                        result.timed_out = True
                        break
                    try:
                        hours = (now - _anchor(row)).total_seconds() / 3600
                        new_score = decayed_score(float(row["score"]), float(row["decay_rate"]), hours)
                        if not math.isfinite(new_score):
                            raise ValueError(f"non-finite score {new_score}")
                    except (TypeError, ValueError, OverflowError) as e:
                        log.warning("Decay skipped chunk %s: %s", row["id"], e)
                        result.errors += 1
                        continue

                    result.processed += 1
                    if new_score < self.min_score:
                        deletions.append(row["id"])
                        result.deleted += 1
                    elif new_score != row["score"]:
                        updates.append((row["id"], new_score))
                        result.decayed += 1

                self.store.write_decay(updates, deletions, now)
                if result.timed_out:
                    log.warning(
                        "Decay deadline of %.0fs exceeded in bucket %s; stopping early",
                        deadline_seconds, bucket_name,
                    )
                    break

        log.info(
            "Decay: %d processed, %d decayed, %d deleted, %d errors",
            result.processed, result.decayed, result.deleted, result.errors,
        )
        return result
