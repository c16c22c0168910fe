"""
ACE Playbook MCP Server - Model Context Protocol surface for the playbook.

Exposes tools for querying, merging deltas, learning from raw insights,
statistics, clearing and running the optimizer. Built with FastMCP.
"""

import logging
from typing import Any

from fastmcp import FastMCP
from pydantic import ValidationError

from ace_playbook.core.config import get_config
from ace_playbook.core.errors import PlaybookError
from ace_playbook.core.manager import PlaybookManager
from ace_playbook.core.schema import DeltaRequest
from ace_playbook.curator import RawInsight, learning_delta
from ace_playbook.utils import setup_logging

logger = logging.getLogger(__name__)

app = FastMCP("ACE Playbook Server")

manager: PlaybookManager | None = None


def get_manager() -> PlaybookManager:
    """Return the module-level manager, creating it from config on first use."""
    global manager
    if manager is None:
        manager = PlaybookManager.from_config(get_config())
    return manager


@app.tool()
def ace_query(query: str, limit: int = 10) -> dict[str, Any]:
    """
    Retrieve the most relevant playbook bullets for a query.

    Retrieval counts as use: each returned bullet's reference count goes up.

    Args:
        query: Free-text query
        limit: Maximum number of bullets to return (default: 10)

    Returns:
        dict: {"bullets": [...], "count": int}
    """
    bullets = get_manager().query_bullets(query, limit)
    return {"bullets": [b.model_dump(mode="json") for b in bullets], "count": len(bullets)}


@app.tool()
def ace_merge(delta: dict) -> dict[str, Any]:
    """
    Merge a delta (new bullets and by-id updates) into the playbook.

    Args:
        delta: DeltaRequest document:
               {"session_id": str, "new_bullets": [...], "updates": [...]}

    Returns:
        dict: Merge summary, or {"success": False, "error": ...}
    """
    try:
        request = DeltaRequest.model_validate(delta)
        summary = get_manager().merge(request)
    except (ValidationError, PlaybookError) as e:
        logger.warning(f"ace_merge failed: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, **summary.model_dump(mode="json")}


@app.tool()
def ace_learn(
    insights: list[dict],
    session_id: str = "",
    used_bullet_ids: list[str] | None = None,
    success: bool = True,
) -> dict[str, Any]:
    """
    Curate raw insights into new bullets and merge them.

    Args:
        insights: RawInsight documents:
                  [{"content": str, "category": str, "importance": float, "context": {...}}]
        session_id: Session the insights came from
        used_bullet_ids: Bullets that were used during the session, if any
        success: Outcome to record for used_bullet_ids

    Returns:
        dict: Merge summary plus "insights_processed", or {"success": False, "error": ...}
    """
    try:
        raw = [RawInsight.model_validate(insight) for insight in insights]
        delta = learning_delta(raw, session_id, used_bullet_ids, success)
        summary = get_manager().merge(delta)
    except (ValidationError, PlaybookError) as e:
        logger.warning(f"ace_learn failed: {e}")
        return {"success": False, "error": str(e)}
    return {
        "success": True,
        "insights_processed": delta.insights_processed,
        **summary.model_dump(mode="json"),
    }


@app.tool()
def ace_stats() -> dict[str, Any]:
    """
    Playbook statistics: totals, categories, sessions, tool usage, optimizer state.

    Returns:
        dict: Statistics document
    """
    mgr = get_manager()
    return {
        "version": mgr.version,
        "stats": mgr.get_stats().model_dump(mode="json"),
        "index": mgr.index.statistics(),
        "optimizer": mgr.optimizer_stats().model_dump(mode="json"),
    }


@app.tool()
def ace_clear(archive: bool = True) -> dict[str, Any]:
    """
    Reset the playbook to empty.

    Args:
        archive: Snapshot the current playbook into the archive first (default: true)

    Returns:
        dict: {"success": bool, "version": int}
    """
    mgr = get_manager()
    try:
        mgr.clear(archive=archive)
    except PlaybookError as e:
        return {"success": False, "error": str(e)}
    return {"success": True, "version": mgr.version}


@app.tool()
def ace_optimize() -> dict[str, Any]:
    """
    Run one optimizer pass (weight refresh, dedup, eviction) now.

    Returns:
        dict: Optimizer result
    """
    try:
        result = get_manager().optimize()
    except PlaybookError as e:
        return {"success": False, "error": str(e)}
    return {"success": True, **result.model_dump(mode="json")}


@app.resource("playbook://json")
def get_playbook_json() -> str:
    """
    Resource handler for playbook://json

    Returns:
        str: JSON-serialized playbook (version, buckets, stats)
    """
    return get_manager().snapshot().model_dump_json(indent=2)


def main() -> None:
    """
    Entry point for running the MCP server.

    Usage:
        python -m ace_playbook.mcp.server
    """
    config = get_config()
    setup_logging(config.logging.level, json_format=config.logging.format == "json")
    mgr = get_manager()
    try:
        if config.mcp.transport == "stdio":
            app.run()
        else:
            app.run(transport=config.mcp.transport, port=config.mcp.port)
    finally:
        mgr.close()


if __name__ == "__main__":
    main()
