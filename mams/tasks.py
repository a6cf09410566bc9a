"""
MAMS Task Queue
===============
Simple file-based queue for deferred work. Drop tasks in with a due
time, the daemon picks them up once they're due.

The reflection engine's schedule() lands here: a reflection/generate
task carrying scope, depth and focus areas, due five minutes out.
"""

import json
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from mams.config import DAEMON_DIR
from mams.log import log

TASK_QUEUE_FILE = "task_queue.jsonl"
TASK_RESULTS_FILE = "task_results.jsonl"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def queue_dir_for(db_path=None) -> Path:
    """Queue directory paired with a database: next to a custom DB, else the home daemon dir."""
    return Path(db_path).parent / "daemon" if db_path else DAEMON_DIR


class TaskQueue:
    """JSONL-backed queue. One line per task, results appended to a second file."""

    def __init__(self, queue_dir: Optional[Path] = None, clock: Optional[Callable[[], datetime]] = None):
        self.queue_dir = Path(queue_dir or DAEMON_DIR)
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self.queue_path = self.queue_dir / TASK_QUEUE_FILE
        self.results_path = self.queue_dir / TASK_RESULTS_FILE
        self.clock = clock or _utcnow
        self._lock = threading.Lock()

    def _read_queue(self) -> list[dict]:
        if not self.queue_path.exists():
            return []
        tasks = []
        for line in self.queue_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                tasks.append(json.loads(line))
            except json.JSONDecodeError:
                log.warning("Skipping unreadable task queue line: %s", line[:80])
        return tasks

    def _write_queue(self, tasks: list[dict]):
        with open(self.queue_path, "w", encoding="utf-8") as f:
            for t in tasks:
                f.write(json.dumps(t) + "\n")

    def _write_result(self, task: dict):
        with open(self.results_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(task, default=str) + "\n")

    def add_task(
        self,
        task_type: str,
        action: str,
        params: Optional[dict] = None,
        priority: int = 5,
        delay_seconds: float = 0,
    ) -> str:
        """Add a task to the queue. Returns task ID."""
        now = self.clock()
        task_id = f"t_{uuid.uuid4().hex[:8]}"
        task = {
            "id": task_id,
            "type": task_type,
            "action": action,
            "params": params or {},
            "priority": priority,
            "status": "pending",
            "created_at": now.isoformat(),
            "scheduled_for": (now + timedelta(seconds=delay_seconds)).isoformat(),
        }
        with self._lock:
            with open(self.queue_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(task) + "\n")
        log.info("Queued %s:%s as %s (due %s)", task_type, action, task_id, task["scheduled_for"])
        return task_id

    def pending(self) -> list[dict]:
        return [t for t in self._read_queue() if t.get("status") == "pending"]

    def due(self) -> list[dict]:
        """Pending tasks whose scheduled time has come, by priority (lower first)."""
        now = self.clock()
        due = [
            t for t in self.pending()
            if datetime.fromisoformat(t["scheduled_for"]) <= now
        ]
        due.sort(key=lambda t: (t.get("priority", 5), t["scheduled_for"]))
        return due

    def process_next(self, handlers: dict) -> Optional[dict]:
        """
        Run the next due task.

        Args:
            handlers: maps (type, action) to a callable taking the task params
                and returning a result dict.

        Returns:
            The finished task (with status and result), or None if nothing is due.
        """
        with self._lock:
            due = self.due()
            if not due:
                return None
            task = due[0]
            tasks = self._read_queue()
            for t in tasks:
                if t["id"] == task["id"]:
                    t["status"] = "running"
                    t["started_at"] = self.clock().isoformat()
            self._write_queue(tasks)

        handler = handlers.get((task["type"], task["action"]))
        if handler is None:
            result = {"success": False, "error": f"No handler for {task['type']}:{task['action']}"}
        else:
            try:
                result = {"success": True, **(handler(task.get("params", {})) or {})}
            except Exception as e:
                log.exception("Task %s failed", task["id"])
                result = {"success": False, "error": str(e)}

        task["status"] = "completed" if result.get("success") else "failed"
        task["completed_at"] = self.clock().isoformat()
        task["result"] = result

        with self._lock:
            remaining = [t for t in self._read_queue() if t["id"] != task["id"]]
            self._write_queue(remaining)
            self._write_result(task)
        return task

    def results(self, n: int = 20) -> list[dict]:
        if not self.results_path.exists():
            return []
        lines = [ln for ln in self.results_path.read_text(encoding="utf-8").splitlines() if ln.strip()]
        out = []
        for line in lines[-n:]:
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return out
