"""
Tests for structured logging and mams doctor.
"""

import json
import logging
import os
import sqlite3
import tempfile
import time
from pathlib import Path

import numpy as np

from mams.doctor import check_all
from mams.store import MemoryStore


def _fresh():
    tmp = tempfile.mkdtemp()
    db = os.path.join(tmp, "test.db")
    return db, tmp


def test_log_setup_adds_stderr_handler():
    """setup() installs a stderr handler exactly once."""
    import mams.log as log_mod
    old_configured = log_mod._configured
    old_handlers = log_mod.log.handlers[:]
    log_mod._configured = False
    log_mod.log.handlers = [logging.NullHandler()]
    try:
        log_mod.setup()
        log_mod.setup()
        handler_types = [type(h).__name__ for h in log_mod.log.handlers]
        assert handler_types.count("StreamHandler") == 1
        assert log_mod._configured is True
    finally:
        log_mod.log.handlers = old_handlers
        log_mod._configured = old_configured


def test_timed_context_manager():
    """timed() measures elapsed time."""
    from mams.log import timed
    with timed("test_op") as t:
        time.sleep(0.01)
    assert t.elapsed_ms >= 5


def test_doctor_healthy():
    db, _ = _fresh()
    store = MemoryStore(db, dimension=384)
    store.add_chunk("semantic_stm", "doctor test memory", np.ones(384), np.ones(384), "test")

    result = check_all(db_path=db)

    assert result["healthy"] is True
    assert result["checks"]["database"]["status"] == "ok"
    assert result["checks"]["schema"]["status"] == "ok"
    assert result["checks"]["buckets"]["count"] == 10
    assert result["checks"]["buckets"]["chunks"] == 1
    assert result["checks"]["embeddings"]["status"] == "ok"


def test_doctor_missing_db():
    result = check_all(db_path=os.path.join(tempfile.mkdtemp(), "absent.db"))
    assert result["healthy"] is False
    assert result["checks"]["database"]["status"] == "missing"
    assert "schema" not in result["checks"]


def test_doctor_reports_missing_buckets():
    db, _ = _fresh()
    MemoryStore(db, dimension=384)
    conn = sqlite3.connect(db)
    conn.execute("DELETE FROM buckets WHERE name = 'odds_ends'")
    conn.commit()
    conn.close()

    result = check_all(db_path=db)

    assert result["healthy"] is False
    assert result["checks"]["buckets"]["missing"] == ["odds_ends"]


def test_doctor_json_serializable():
    db, _ = _fresh()
    MemoryStore(db, dimension=384)
    parsed = json.loads(json.dumps(check_all(db_path=db)))
    assert "healthy" in parsed
    assert "checks" in parsed


def test_doctor_reads_queue_next_to_custom_db():
    from mams.embeddings import HashEmbedder
    from mams.system import MemorySystem

    db, tmp = _fresh()
    system = MemorySystem(db_path=db, embedder=HashEmbedder(384))
    system.tasks.add_task("memory", "decay")

    tasks = check_all(db_path=db)["checks"]["tasks"]

    assert system.tasks.queue_dir == Path(tmp) / "daemon"
    assert tasks == {"status": "ok", "queued": 1}
