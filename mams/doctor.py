"""
MAMS Doctor: health check for the memory store.
Checks: database, schema, buckets, embeddings, task queue.
"""

import json
import os
import sqlite3
import sys

from mams.config import BUCKET_NAMES, DB_PATH, EMBEDDING_BACKEND, SERVER_VERSION
from mams.tasks import TASK_QUEUE_FILE, queue_dir_for


def check_all(db_path: str = None) -> dict:
    """Run all health checks. Returns dict with status and details."""
    db = str(db_path or DB_PATH)
    checks = {}
    healthy = True

    # 1. Database exists and is readable
    if os.path.exists(db):
        try:
            conn = sqlite3.connect(db, timeout=10)
            conn.execute("SELECT 1").fetchone()
            conn.close()
            size_mb = os.path.getsize(db) / (1024 * 1024)
            checks["database"] = {"status": "ok", "path": db, "size_mb": round(size_mb, 2)}
        except sqlite3.Error as e:
            checks["database"] = {"status": "error", "path": db, "error": str(e)}
            healthy = False
    else:
        checks["database"] = {"status": "missing", "path": db}
        healthy = False

    db_ok = checks["database"]["status"] == "ok"

    # 2. Schema version
    if db_ok:
        from mams.migrations import LATEST_VERSION, get_version
        try:
            conn = sqlite3.connect(db, timeout=10)
            try:
                version = get_version(conn)
            finally:
                conn.close()
            current = version == LATEST_VERSION
            checks["schema"] = {"status": "ok" if current else "outdated", "version": version, "latest": LATEST_VERSION}
            if not current:
                healthy = False
        except sqlite3.Error as e:
            checks["schema"] = {"status": "error", "error": str(e)}
            healthy = False

    # 3. Canonical buckets present
    if db_ok:
        try:
            conn = sqlite3.connect(db, timeout=10)
            try:
                present = {r[0] for r in conn.execute("SELECT name FROM buckets").fetchall()}
                total = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            finally:
                conn.close()
            missing = [b for b in BUCKET_NAMES if b not in present]
            checks["buckets"] = {
                "status": "ok" if not missing else "error",
                "count": len(present),
                "chunks": total,
            }
            if missing:
                checks["buckets"]["missing"] = missing
                healthy = False
        except sqlite3.Error as e:
            checks["buckets"] = {"status": "error", "error": str(e)}
            healthy = False

    # 4. Embedding backend
    try:
        from mams.embeddings import get_embedder
        vec = get_embedder().embed("test")
        checks["embeddings"] = {"status": "ok", "backend": EMBEDDING_BACKEND, "dimension": len(vec)}
    except Exception as e:
        checks["embeddings"] = {"status": "error", "backend": EMBEDDING_BACKEND, "error": str(e)}
        healthy = False

    # 5. Task queue
    queue_file = queue_dir_for(db_path) / TASK_QUEUE_FILE
    if queue_file.exists():
        lines = [ln for ln in queue_file.read_text(encoding="utf-8").splitlines() if ln.strip()]
        checks["tasks"] = {"status": "ok", "queued": len(lines)}
    else:
        checks["tasks"] = {"status": "none", "message": "No task queue yet"}

    return {
        "healthy": healthy,
        "version": SERVER_VERSION,
        "checks": checks,
    }


def print_report(result: dict):
    status = "HEALTHY" if result["healthy"] else "UNHEALTHY"
    print(f"MAMS v{result['version']}: {status}")
    print()
    for name, check in result["checks"].items():
        icon = "+" if check["status"] == "ok" else "-" if check["status"] == "error" else "?"
        details = {k: v for k, v in check.items() if k != "status"}
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        print(f"  [{icon}] {name}: {check['status']} {detail_str}")


def main(argv=None):
    """CLI entry point for mams-doctor."""
    import argparse
    from mams.log import setup
    setup()

    p = argparse.ArgumentParser(description="MAMS health check")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.add_argument("--db-path", help="Custom database path")
    args = p.parse_args(argv)

    result = check_all(db_path=args.db_path)
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print_report(result)

    sys.exit(0 if result["healthy"] else 1)


if __name__ == "__main__":
    main()
