"""
MAMS Daemon
===========
Background process that keeps memory healthy between conversations.

  Scheduler:   interval jobs (decay every hour, due tasks every minute)
  ActivityLog: one JSON line per job run under MAMS_HOME/daemon/

Decay and task processing share one lock: a decay pass must never
overlap another, and a queued decay task counts as one.
"""

import asyncio
import json
import os
import signal
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mams.config import DAEMON_DIR, DECAY_INTERVAL_HOURS, TASK_POLL_MINUTES
from mams.log import log, setup
from mams.system import MemorySystem

ACTIVITY_FILE = "activity.jsonl"
MAX_ACTIVITY_LINES = 5000


def _now():
    return datetime.now(timezone.utc).isoformat()


# ── Activity Logger ─────────────────────────────────────────

class ActivityLog:
    def __init__(self, daemon_dir: Optional[Path] = None):
        self.path = Path(daemon_dir or DAEMON_DIR) / ACTIVITY_FILE
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, action: str, detail: str = "", result: str = "ok"):
        entry = {"timestamp": _now(), "action": action, "detail": detail, "result": result}
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")
        if detail:
            log.info("%s: %s", action, detail[:80])
        else:
            log.info(action)
        self._trim()

    def _trim(self):
        lines = self.path.read_text(encoding="utf-8").strip().split("\n")
        if len(lines) > MAX_ACTIVITY_LINES:
            self.path.write_text("\n".join(lines[-MAX_ACTIVITY_LINES:]) + "\n", encoding="utf-8")

    def recent(self, n: int = 20) -> list[dict]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").strip().split("\n")[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries


# ── Scheduler ───────────────────────────────────────────────

class Scheduler:
    """Interval scheduler on asyncio."""

    def __init__(self, activity: ActivityLog, tick_seconds: float = 30):
        self._jobs: list[dict] = []
        self.activity = activity
        self.tick_seconds = tick_seconds
        self.running = False

    def every(self, hours: float, name: str, func):
        self._jobs.append({"name": name, "interval_seconds": hours * 3600, "func": func, "last_run": 0})

    def every_minutes(self, minutes: float, name: str, func):
        self.every(minutes / 60, name, func)

    @property
    def jobs(self) -> list[str]:
        return [j["name"] for j in self._jobs]

    def run_pending(self, now: Optional[float] = None) -> list[str]:
        """Run every job whose interval has elapsed. Returns the names that ran."""
        now = time.time() if now is None else now
        ran = []
        for job in self._jobs:
            if now - job["last_run"] < job["interval_seconds"]:
                continue
            try:
                self.activity.log("job_started", job["name"])
                result = job["func"]()
                self.activity.log("job_completed", job["name"],
                                  json.dumps(result, default=str)[:200] if result else "ok")
            except Exception as e:
                log.exception("Job %s failed", job["name"])
                self.activity.log("job_error", job["name"], str(e))
            # Failed jobs wait a full interval too
            job["last_run"] = now
            ran.append(job["name"])
        return ran

    async def run(self):
        log.info("Scheduler started with %d jobs", len(self._jobs))
        self.running = True
        while self.running:
            await asyncio.to_thread(self.run_pending)
            await asyncio.sleep(self.tick_seconds)


# ── Main Daemon ─────────────────────────────────────────────

class MamsDaemon:

    def __init__(self, system: Optional[MemorySystem] = None, daemon_dir: Optional[Path] = None):
        self.system = system or MemorySystem()
        self.activity = ActivityLog(daemon_dir or self.system.tasks.queue_dir)
        self.scheduler = Scheduler(self.activity)
        self._work_lock = threading.Lock()
        self.scheduler.every(DECAY_INTERVAL_HOURS, "decay", self.run_decay)
        self.scheduler.every_minutes(TASK_POLL_MINUTES, "tasks", self.process_tasks)

    def run_decay(self) -> dict:
        with self._work_lock:
            return self.system.decay.apply_decay().to_dict()

    def process_tasks(self) -> dict:
        """Drain every task that is due right now."""
        handlers = self.system.task_handlers()
        completed = failed = 0
        with self._work_lock:
            while True:
                task = self.system.tasks.process_next(handlers)
                if task is None:
                    break
                if task["status"] == "completed":
                    completed += 1
                else:
                    failed += 1
        return {"completed": completed, "failed": failed}

    async def run(self):
        self.activity.log("daemon_started", f"PID {os.getpid()}")

        def shutdown(sig, frame):
            log.info("Received signal %s, shutting down...", sig)
            self.scheduler.running = False

        signal.signal(signal.SIGINT, shutdown)
        try:
            signal.signal(signal.SIGTERM, shutdown)
        except (OSError, ValueError):
            pass  # not available on this platform

        try:
            await self.scheduler.run()
        except asyncio.CancelledError:
            pass
        finally:
            self.activity.log("daemon_stopped", "Clean shutdown")


def main(db_path: Optional[str] = None):
    """Start the daemon. Called from CLI."""
    setup()
    daemon = MamsDaemon(MemorySystem(db_path))
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        log.info("Interrupted. Shutting down.")


if __name__ == "__main__":
    main()
