"""
MAMS CLI
========
Command-line interface for memory operations and the background daemon.

Usage:
    mams serve                       Start the MCP stdio server (default)
    mams init                        Create the database and canonical buckets
    mams remember <bucket> <text>    Store a memory
    mams recall [query]              Search memory
    mams boost <chunk_id>            Reinforce a memory
    mams decay                       Run one decay pass
    mams reflect <bucket>...         Reflect over buckets now
    mams schedule <bucket>...        Queue a reflection for the daemon
    mams tasks                       Pending and recent tasks
    mams stats                       Bucket counts and totals
    mams doctor                      Health check
    mams daemon                      Run the decay / task daemon in the foreground
"""

import argparse
import json
import sys

from mams.config import BUCKET_NAMES, SERVER_VERSION
from mams.errors import MamsError


def _system(args):
    from mams.system import MemorySystem
    return MemorySystem(db_path=args.db_path)


def _tool(args, name: str, tool_args: dict) -> int:
    from mams.tools import call_tool
    result = call_tool(_system(args), name, tool_args)
    stream = sys.stderr if result.get("isError") else sys.stdout
    print(result["text"], file=stream)
    return 1 if result.get("isError") else 0


def cmd_serve(args) -> int:
    from mams.server import run
    run(args.db_path)
    return 0


def cmd_init(args) -> int:
    system = _system(args)
    stats = system.stats()
    print(f"Memory ready at {system.db_path} ({len(stats['buckets'])} buckets, {stats['total_chunks']} chunks)")
    return 0


def cmd_remember(args) -> int:
    try:
        metadata = json.loads(args.metadata) if args.metadata else None
    except json.JSONDecodeError as e:
        print(f"Error: --metadata is not valid JSON: {e}", file=sys.stderr)
        return 2
    return _tool(args, "mams_remember", {
        "bucket": args.bucket,
        "text": args.text,
        "source": args.source,
        "agent_id": args.agent_id,
        "metadata": metadata,
    })


def cmd_recall(args) -> int:
    return _tool(args, "mams_recall", {"query": args.query, "buckets": args.bucket, "limit": args.limit})


def cmd_boost(args) -> int:
    return _tool(args, "mams_boost", {"chunk_id": args.chunk_id, "amount": args.amount})


def cmd_decay(args) -> int:
    return _tool(args, "mams_decay", {})


def _reflection_args(args) -> dict:
    return {
        "memory_scope": args.buckets,
        "reflection_depth": args.depth,
        "focus_areas": args.focus or [],
        "conductor_id": args.conductor,
    }


def cmd_reflect(args) -> int:
    return _tool(args, "mams_reflect", _reflection_args(args))


def cmd_schedule(args) -> int:
    return _tool(args, "mams_schedule_reflection", _reflection_args(args))


def cmd_tasks(args) -> int:
    system = _system(args)
    pending = system.tasks.pending()
    print(f"Pending ({len(pending)}):")
    for t in pending:
        print(f"  {t['id']} {t['type']}:{t['action']} priority={t['priority']} due={t['scheduled_for']}")
    results = system.tasks.results(args.limit)
    print(f"Recent results ({len(results)}):")
    for t in results:
        print(f"  {t['id']} {t['type']}:{t['action']} {t['status']} at {t.get('completed_at', '?')}")
    return 0


def cmd_stats(args) -> int:
    if args.json:
        print(json.dumps(_system(args).stats(), indent=2))
        return 0
    return _tool(args, "mams_stats", {})


def cmd_doctor(args) -> int:
    from mams.doctor import check_all, print_report
    result = check_all(db_path=args.db_path)
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print_report(result)
    return 0 if result["healthy"] else 1


def cmd_daemon(args) -> int:
    from mams.daemon import main as daemon_main
    daemon_main(args.db_path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mams", description="Multi-agent memory system")
    p.add_argument("--version", action="version", version=f"mams {SERVER_VERSION}")
    p.add_argument("--db-path", help="Custom database path")
    sub = p.add_subparsers(dest="command")

    s = sub.add_parser("serve", help="Start the MCP stdio server")
    s.set_defaults(func=cmd_serve)

    s = sub.add_parser("init", help="Create the database and canonical buckets")
    s.set_defaults(func=cmd_init)

    s = sub.add_parser("remember", help="Store a memory")
    s.add_argument("bucket", choices=BUCKET_NAMES)
    s.add_argument("text")
    s.add_argument("--source", default="manual")
    s.add_argument("--agent-id")
    s.add_argument("--metadata", help="JSON object of chunk metadata")
    s.set_defaults(func=cmd_remember)

    s = sub.add_parser("recall", help="Search memory")
    s.add_argument("query", nargs="?")
    s.add_argument("--bucket", action="append", choices=BUCKET_NAMES, help="Restrict to bucket (repeatable)")
    s.add_argument("--limit", type=int, default=20)
    s.set_defaults(func=cmd_recall)

    s = sub.add_parser("boost", help="Reinforce a memory")
    s.add_argument("chunk_id", type=int)
    s.add_argument("--amount", type=float, default=0.1)
    s.set_defaults(func=cmd_boost)

    s = sub.add_parser("decay", help="Run one decay pass")
    s.set_defaults(func=cmd_decay)

    for name, func, help_text in (
        ("reflect", cmd_reflect, "Reflect over buckets now"),
        ("schedule", cmd_schedule, "Queue a reflection for the daemon"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("buckets", nargs="+", choices=BUCKET_NAMES)
        s.add_argument("--depth", choices=["shallow", "medium", "deep"], default="medium")
        s.add_argument("--focus", action="append", help="Focus area (repeatable)")
        s.add_argument("--conductor", default=None)
        s.set_defaults(func=func)

    s = sub.add_parser("tasks", help="Pending and recent tasks")
    s.add_argument("--limit", type=int, default=10)
    s.set_defaults(func=cmd_tasks)

    s = sub.add_parser("stats", help="Bucket counts and totals")
    s.add_argument("--json", action="store_true", help="Output as JSON")
    s.set_defaults(func=cmd_stats)

    s = sub.add_parser("doctor", help="Health check")
    s.add_argument("--json", action="store_true", help="Output as JSON")
    s.set_defaults(func=cmd_doctor)

    s = sub.add_parser("daemon", help="Run the decay / task daemon in the foreground")
    s.set_defaults(func=cmd_daemon)

    return p


def main(argv=None):
    from mams.log import setup
    args = build_parser().parse_args(argv)
    if args.command is None:
        args.func = cmd_serve
    if args.command not in ("serve", None):
        setup()
    try:
        code = args.func(args)
    except MamsError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
