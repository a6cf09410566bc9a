"""
MAMS Tool Registry
Single source of truth for all tool definitions and handlers.
The stdio server and the CLI both dispatch through call_tool().
"""

import json

from mams.config import BUCKET_NAMES, DEFAULT_BOOST, DEFAULT_CONDUCTOR_ID
from mams.errors import MamsError
from mams.log import log
from mams.models import LinkType, ReflectionRequest, VALID_DEPTHS
from mams.system import MemorySystem

_BUCKET_PROP = {"type": "string", "enum": BUCKET_NAMES, "description": "Memory bucket name."}
_BUCKETS_PROP = {
    "type": "array",
    "items": {"type": "string", "enum": BUCKET_NAMES},
    "description": "Buckets to include. Omit for all buckets.",
}

TOOL_DEFS = [
    {
        "name": "mams_remember",
        "description": (
            "Store a piece of text in a memory bucket.\n\n"
            "Short-term buckets (*_stm) fade within days unless reinforced, "
            "long-term buckets (*_ltm) over months.\n\n"
            "Returns: the new chunk id."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "bucket": _BUCKET_PROP,
                "text": {"type": "string", "description": "What to remember."},
                "source": {"type": "string", "description": "Where it came from (default: 'manual')."},
                "agent_id": {"type": "string", "description": "Agent that produced it."},
                "metadata": {"type": "object", "description": "category, tags, importance, user_id, task_id, session_id, ..."},
            },
            "required": ["bucket", "text"],
        },
    },
    {
        "name": "mams_recall",
        "description": (
            "Search memory by meaning across buckets. Recalled memories count "
            "as accessed, which slows their decay.\n\n"
            "Returns: matching chunks with similarity and score."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for. Omit to rank by score."},
                "buckets": _BUCKETS_PROP,
                "limit": {"type": "integer", "description": "Max results (default 20)."},
            },
        },
    },
    {
        "name": "mams_bucket",
        "description": "Top chunks of one bucket by score, then recency.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "bucket": _BUCKET_PROP,
                "limit": {"type": "integer", "description": "Max chunks (default 10)."},
                "min_score": {"type": "number", "description": "Score floor (default 0.1)."},
            },
            "required": ["bucket"],
        },
    },
    {
        "name": "mams_boost",
        "description": "Reinforce a memory: raises its score and counts an access.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "chunk_id": {"type": "integer"},
                "amount": {"type": "number", "description": f"Score increase (default {DEFAULT_BOOST})."},
            },
            "required": ["chunk_id"],
        },
    },
    {
        "name": "mams_link",
        "description": "Create a directed, typed link between two memories.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "source_id": {"type": "integer"},
                "target_id": {"type": "integer"},
                "link_type": {"type": "string", "enum": [t.value for t in LinkType]},
                "strength": {"type": "number", "description": "Edge weight (default 1.0)."},
            },
            "required": ["source_id", "target_id"],
        },
    },
    {
        "name": "mams_links",
        "description": "Outgoing and incoming links of one memory.",
        "inputSchema": {
            "type": "object",
            "properties": {"chunk_id": {"type": "integer"}},
            "required": ["chunk_id"],
        },
    },
    {
        "name": "mams_decay",
        "description": "Run one decay pass now. Evicts memories that have faded below the retention floor.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "mams_reflect",
        "description": (
            "Reflect over a set of buckets: patterns, topics, new links "
            "between similar memories and recommendations.\n\n"
            "Returns: insights, connections, recommendations and a confidence score."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "memory_scope": _BUCKETS_PROP,
                "reflection_depth": {"type": "string", "enum": list(VALID_DEPTHS)},
                "focus_areas": {"type": "array", "items": {"type": "string"}},
                "conductor_id": {"type": "string"},
            },
            "required": ["memory_scope"],
        },
    },
    {
        "name": "mams_schedule_reflection",
        "description": "Queue a reflection to run in five minutes. Returns the task id.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "memory_scope": _BUCKETS_PROP,
                "reflection_depth": {"type": "string", "enum": list(VALID_DEPTHS)},
                "focus_areas": {"type": "array", "items": {"type": "string"}},
                "conductor_id": {"type": "string"},
            },
            "required": ["memory_scope"],
        },
    },
    {
        "name": "mams_reflections",
        "description": "Most recent stored reflection records.",
        "inputSchema": {
            "type": "object",
            "properties": {"limit": {"type": "integer", "description": "Max records (default 10)."}},
        },
    },
    {
        "name": "mams_stats",
        "description": "Memory counts per bucket, link and reflection totals, pending tasks.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]

TOOL_NAMES = [t["name"] for t in TOOL_DEFS]


def _format_chunk(i: int, chunk, similarity=None) -> str:
    sim = f"similarity: {similarity:.3f}, " if similarity is not None else ""
    return f"[{i}] #{chunk.id} ({sim}score: {chunk.score:.3f}, {chunk.bucket_name}, via: {chunk.source})\n{chunk.text}"


def _reflection_request(args: dict, trigger_type: str) -> ReflectionRequest:
    return ReflectionRequest.create(
        args.get("memory_scope") or [],
        args.get("reflection_depth", "medium"),
        args.get("focus_areas"),
        trigger_type,
    )


def call_tool(system: MemorySystem, name: str, args: dict) -> dict:
    """Dispatch a tool call. Returns MCP-format result dict."""
    args = args or {}
    try:
        return _dispatch(system, name, args)
    except MamsError as e:
        return {"text": f"Error: {e}", "isError": True}
    except Exception as e:
        log.exception("Tool %s failed", name)
        return {"text": f"Error: {e}", "isError": True}


def _dispatch(system: MemorySystem, name: str, args: dict) -> dict:
    if name == "mams_remember":
        chunk = system.remember(
            args.get("bucket", ""),
            args.get("text", ""),
            source=args.get("source") or "manual",
            agent_id=args.get("agent_id"),
            metadata=args.get("metadata"),
        )
        return {"text": f"Remembered as chunk #{chunk.id} in {chunk.bucket_name}."}

    elif name == "mams_recall":
        results = system.recall(args.get("query"), args.get("buckets"), limit=args.get("limit") or 20)
        if not results:
            return {"text": "No relevant memories found."}
        formatted = [_format_chunk(i, r.chunk, r.similarity) for i, r in enumerate(results, 1)]
        return {"text": f"Found {len(results)} relevant memories:\n\n" + "\n\n---\n\n".join(formatted)}

    elif name == "mams_bucket":
        chunks = system.store.get_chunks_from_bucket(
            args.get("bucket", ""),
            limit=args.get("limit", 10),
            min_score=args.get("min_score", 0.1),
        )
        if not chunks:
            return {"text": f"No memories in {args.get('bucket')} above the score floor."}
        return {"text": "\n\n".join(_format_chunk(i, c) for i, c in enumerate(chunks, 1))}

    elif name == "mams_boost":
        chunk = system.store.boost(args.get("chunk_id"), args.get("amount", DEFAULT_BOOST))
        return {"text": f"Boosted #{chunk.id}. Score now {chunk.score:.3f} ({chunk.access_count} accesses)."}

    elif name == "mams_link":
        link = system.links.create_link(
            args.get("source_id"),
            args.get("target_id"),
            args.get("link_type", "semantic"),
            args.get("strength", 1.0),
        )
        return {"text": f"Linked #{link.source_id} -> #{link.target_id} ({link.link_type.value}, strength {link.strength:.2f})."}

    elif name == "mams_links":
        links = system.links.get_links(args.get("chunk_id"))
        lines = [f"Outgoing ({len(links.outgoing)}):"]
        lines += [f"  -> #{ln.target_id} {ln.link_type.value} {ln.strength:.2f}" for ln in links.outgoing]
        lines.append(f"Incoming ({len(links.incoming)}):")
        lines += [f"  <- #{ln.source_id} {ln.link_type.value} {ln.strength:.2f}" for ln in links.incoming]
        return {"text": "\n".join(lines)}

    elif name == "mams_decay":
        result = system.decay.apply_decay()
        timed_out = " (stopped at deadline)" if result.timed_out else ""
        return {"text": (
            f"Decay complete{timed_out}.\n"
            f"  Processed: {result.processed}\n"
            f"  Decayed: {result.decayed}\n"
            f"  Deleted: {result.deleted}\n"
            f"  Errors: {result.errors}"
        )}

    elif name == "mams_reflect":
        request = _reflection_request(args, "user_request")
        result = system.reflection.generate(request, args.get("conductor_id") or DEFAULT_CONDUCTOR_ID)
        return {"text": json.dumps(result.to_dict(), indent=2, ensure_ascii=False)}

    elif name == "mams_schedule_reflection":
        request = _reflection_request(args, "scheduled")
        task_id = system.reflection.schedule(request, args.get("conductor_id") or DEFAULT_CONDUCTOR_ID)
        return {"text": f"Reflection scheduled as task {task_id}."}

    elif name == "mams_reflections":
        reflections = system.reflection.recent_reflections(args.get("limit", 10))
        if not reflections:
            return {"text": "No reflections yet."}
        return {"text": "\n".join(
            f"[{r.created_at.isoformat()}] chunk #{r.chunk_id}: {r.reflection[:200]}" for r in reflections
        )}

    elif name == "mams_stats":
        stats = system.stats()
        bucket_lines = "\n".join(f"    {b['name']} ({b['type']}): {b['chunk_count']}" for b in stats["buckets"])
        return {"text": (
            f"Memory stats:\n"
            f"  Total chunks: {stats['total_chunks']}\n"
            f"  Links: {stats['total_links']}\n"
            f"  Reflections: {stats['total_reflections']}\n"
            f"  Pending tasks: {stats['pending_tasks']}\n"
            f"  Buckets:\n{bucket_lines}\n"
            f"  Database: {stats['db_path']}"
        )}

    return {"text": f"Unknown tool: {name}", "isError": True}
