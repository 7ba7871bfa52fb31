"""
deepctx MCP Server — project memory for MCP-compatible coding assistants

Standalone MCP server exposing the deepctx memory system over stdio.
Works with any MCP client (Claude Desktop, editors, agents).

Architecture: thin MCP layer delegating to MemorySystem.  All ranking,
policy and friction logic lives in deepctx/*.

Startup:
    1. Resolve the project: walk up from --project to the nearest ``.dc/``,
       otherwise initialise ``.dc/`` in --project itself.
    2. A ``.dcignore`` file in the project disables the server: it starts
       with no tools.
    3. Open the store, start a session, touch the global registry.

Usage:
    deepctx-mcp
    deepctx-mcp --project /path/to/repo --provider ollama
    python -m deepctx.mcp.server -v
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Persistent project memory for coding assistants (7 tools).\n"
    "\n"
    "PRIMARY:  Call dc_memory_context with the task before writing code.\n"
    "STORE:    Use dc_memory_add for rules (constraint), architectural\n"
    "          choices (decision) and soft preferences (heuristic).\n"
    "SEARCH:   Use dc_memory_search / dc_memory_list for discovery.\n"
    "FEEDBACK: dc_log_friction when an approach failed, dc_memory_boost\n"
    "          when a memory helped.\n"
    "\n"
    "Rules:\n"
    "- Constraints returned by dc_memory_context MUST be followed\n"
    "- Store one distilled fact per memory, not transcripts\n"
    "- NEVER store secrets, keys or tokens\n"
)

_DISABLED_INSTRUCTIONS = (
    "Deep Context is disabled for this project (.dcignore exists). "
    "No memory tools are available."
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the deepctx MCP server."""
    p = argparse.ArgumentParser(
        prog="deepctx-mcp",
        description="deepctx MCP Server — persistent project memory for coding assistants",
    )
    p.add_argument(
        "--project",
        default=os.environ.get("DEEPCTX_PROJECT", os.getcwd()),
        help="Project directory (default: current directory or $DEEPCTX_PROJECT)",
    )
    p.add_argument(
        "--provider",
        choices=["simple", "local", "ollama", "openai"],
        default=os.environ.get("DEEPCTX_PROVIDER"),
        help="Override the embedding provider from .dc/config.json ($DEEPCTX_PROVIDER)",
    )
    p.add_argument(
        "--registry",
        default=os.environ.get("DEEPCTX_REGISTRY"),
        help="Project registry file (default: ~/.deep-context/projects.json)",
    )
    p.add_argument(
        "--no-registry",
        action="store_true",
        help="Do not record usage in the global project registry",
    )
    p.add_argument(
        "--audit-log",
        default=os.environ.get("DEEPCTX_AUDIT_LOG"),
        help="Append the JSONL audit trail to this file (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def resolve_project_root(start: Path):
    """Nearest initialised ancestor of ``start``, or ``start`` after init.

    Returns None when ``start`` carries a ``.dcignore``.
    """
    from deepctx.config import find_project_root, init_project, is_project_disabled

    start = Path(start).resolve()
    if is_project_disabled(start):
        return None
    root = find_project_root(start)
    if root is not None:
        return None if is_project_disabled(root) else root
    init_project(start)
    return start


def create_server(args=None):
    """Create and configure the MCP server.

    Returns:
        (mcp, system, audit) tuple. ``system`` and ``audit`` are None for a
        disabled project.
    """
    from mcp.server.fastmcp import FastMCP

    from deepctx.config import config_path, load_config
    from deepctx.mcp.audit import AuditLogger
    from deepctx.mcp.tools import register_memory_tools
    from deepctx.registry import ProjectRegistry
    from deepctx.system import MemorySystem

    if args is None:
        args = build_parser().parse_args()

    root = resolve_project_root(Path(args.project))
    if root is None:
        logger.info("deepctx disabled for %s (.dcignore)", args.project)
        return FastMCP(name="deepctx Memory", instructions=_DISABLED_INSTRUCTIONS), None, None

    config = load_config(config_path(root))
    if args.provider:
        config.embeddings.provider = args.provider

    system = MemorySystem.open(root, config=config)
    session_id = system.start_session()

    registry = None
    if not args.no_registry:
        registry = ProjectRegistry(args.registry)
        registry.touch(root, system.get_stats().total_count)

    audit = AuditLogger.to_file(args.audit_log) if args.audit_log else AuditLogger()

    mcp = FastMCP(
        name="deepctx Memory",
        instructions=_MCP_INSTRUCTIONS,
    )

    register_memory_tools(
        mcp, system,
        session_id=session_id,
        registry=registry,
        project_root=root,
        audit=audit,
    )

    logger.info(
        "deepctx MCP server ready: project=%s, provider=%s, session=%s, registry=%s",
        root, config.embeddings.provider, session_id,
        registry.path if registry else "(off)",
    )

    return mcp, system, audit


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, system, audit = create_server(args)
    try:
        mcp.run()
    finally:
        if system is not None:
            system.close()
        if audit is not None:
            audit.close()


if __name__ == "__main__":
    main()
