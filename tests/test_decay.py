"""
Tests for decay and eviction. All time is driven by a fake clock.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from mams.decay import DecayScheduler, decayed_score
from mams.errors import NotFound
from mams.store import MemoryStore

DIM = 8


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, hours: float):
        self.now += timedelta(hours=hours)


def _fresh():
    tmp = tempfile.mkdtemp()
    clock = FakeClock()
    store = MemoryStore(os.path.join(tmp, "test.db"), dimension=DIM, clock=clock)
    return store, DecayScheduler(store), clock


def _add(store, bucket="semantic_stm", text="a memory"):
    return store.add_chunk(bucket, text, np.ones(DIM), np.ones(DIM), "test")


def test_decayed_score_formula():
    assert decayed_score(1.0, 0.99, 0) == 1.0
    assert decayed_score(2.0, 0.5, 2) == pytest.approx(0.5)
    assert decayed_score(1.0, 0.99, -5) == 1.0


def test_short_term_chunk_after_100_hours():
    store, decay, clock = _fresh()
    chunk = _add(store)
    clock.advance(100)

    result = decay.apply_decay()

    assert result.processed == 1
    assert result.decayed == 1
    assert result.deleted == 0
    assert store.get_chunk(chunk.id).score == pytest.approx(0.990 ** 100)
    assert store.get_chunk(chunk.id).score == pytest.approx(0.366, abs=1e-3)


def test_short_term_chunk_evicted_after_1000_hours():
    store, decay, clock = _fresh()
    chunk = _add(store)
    clock.advance(1000)

    result = decay.apply_decay()

    assert result.deleted == 1
    with pytest.raises(NotFound):
        store.get_chunk(chunk.id)


def test_long_term_chunk_survives_1000_hours():
    store, decay, clock = _fresh()
    chunk = _add(store, "semantic_ltm")
    clock.advance(1000)
    decay.apply_decay()
    assert store.get_chunk(chunk.id).score == pytest.approx(0.999 ** 1000)


def test_decay_never_increases_score():
    store, decay, clock = _fresh()
    chunks = [_add(store, b) for b in ("semantic_stm", "semantic_ltm", "diary_rl", "api_docs", "odds_ends")]
    previous = {c.id: c.score for c in chunks}
    for _ in range(5):
        clock.advance(7)
        decay.apply_decay()
        for c in chunks:
            score = store.get_chunk(c.id).score
            assert score <= previous[c.id]
            previous[c.id] = score


def test_second_pass_without_elapsed_time_is_noop():
    store, decay, clock = _fresh()
    chunk = _add(store)
    clock.advance(10)
    decay.apply_decay()
    first = store.get_chunk(chunk.id).score

    result = decay.apply_decay()

    assert result.decayed == 0
    assert store.get_chunk(chunk.id).score == first


def test_decay_does_not_touch_last_accessed():
    store, decay, clock = _fresh()
    chunk = _add(store)
    clock.advance(10)
    decay.apply_decay()
    after = store.get_chunk(chunk.id)
    assert after.last_accessed == chunk.last_accessed
    assert after.access_count == 0


def test_many_passes_follow_the_same_curve_as_one():
    store, decay, clock = _fresh()
    stepped = _add(store, text="decayed every ten hours")
    for _ in range(10):
        clock.advance(10)
        decay.apply_decay()
    assert store.get_chunk(stepped.id).score == pytest.approx(0.990 ** 100, rel=1e-9)


def test_boost_restarts_the_decay_clock():
    store, decay, clock = _fresh()
    chunk = _add(store)
    clock.advance(50)
    store.boost(chunk.id, 0.5)

    decay.apply_decay()

    assert store.get_chunk(chunk.id).score == pytest.approx(1.5)


def test_bad_row_counted_and_skipped():
    store, decay, clock = _fresh()
    broken = _add(store, text="broken timestamp")
    healthy = _add(store, text="healthy")
    conn = store.connect()
    conn.execute("UPDATE chunks SET last_accessed = 'not-a-date' WHERE id = ?", (broken.id,))
    conn.commit()
    conn.close()
    clock.advance(100)

    result = decay.apply_decay()

    assert result.errors == 1
    assert result.processed == 1
    assert store.get_chunk(healthy.id).score == pytest.approx(0.990 ** 100)


def test_deadline_stops_scan():
    store, decay, clock = _fresh()
    chunk = _add(store)
    clock.advance(100)

    result = decay.apply_decay(deadline_seconds=-1)

    assert result.timed_out is True
    assert result.processed == 0
    assert store.get_chunk(chunk.id).score == 1.0


def test_result_serializes():
    store, decay, clock = _fresh()
    assert decay.apply_decay().to_dict() == {
        "processed": 0, "decayed": 0, "deleted": 0, "errors": 0, "timed_out": False,
    }
