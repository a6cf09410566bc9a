"""
MAMS MCP Server
===============
Exposes the memory system over MCP stdio. Tools are defined in
mams.tools; this module only adapts them to the mcp library.

  mams_remember, mams_recall, mams_bucket, mams_boost,
  mams_link, mams_links, mams_decay, mams_reflect,
  mams_schedule_reflection, mams_reflections, mams_stats
"""

import asyncio
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from mams.config import SERVER_NAME, SERVER_VERSION
from mams.log import log, setup
from mams.system import MemorySystem
from mams.tools import TOOL_DEFS, call_tool


def build_server(system: MemorySystem) -> Server:
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=t["name"], description=t["description"], inputSchema=t["inputSchema"])
            for t in TOOL_DEFS
        ]

    @server.call_tool()
    async def handle_tool(name: str, arguments: dict) -> list[TextContent]:
        # Store calls are blocking sqlite work; keep them off the event loop
        result = await asyncio.to_thread(call_tool, system, name, arguments or {})
        return [TextContent(type="text", text=result["text"])]

    return server


async def main(db_path: Optional[str] = None):
    setup()
    system = MemorySystem(db_path)
    server = build_server(system)

    stats = system.stats()
    log.info("Starting %s v%s", SERVER_NAME, SERVER_VERSION)
    log.info("Memory: %s | %d chunks | %d tools ready", system.db_path, stats["total_chunks"], len(TOOL_DEFS))

    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def run(db_path: Optional[str] = None):
    asyncio.run(main(db_path))


if __name__ == "__main__":
    run()
