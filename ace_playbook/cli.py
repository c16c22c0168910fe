"""ACE Playbook CLI entrypoint."""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

from pydantic import ValidationError

from ace_playbook import __version__
from ace_playbook.core.config import load_config
from ace_playbook.core.errors import PlaybookError
from ace_playbook.core.manager import PlaybookManager
from ace_playbook.core.schema import DeltaRequest, MergeSummary
from ace_playbook.curator import RawInsight, learning_delta
from ace_playbook.utils import setup_logging


def read_json_input(path_or_stdin: str | None) -> Any:
    """Read JSON from file path or stdin."""
    if path_or_stdin and path_or_stdin != "-":
        with open(path_or_stdin) as f:
            return json.load(f)  # type: ignore
    else:
        return json.load(sys.stdin)  # type: ignore


def print_output(data: Any, as_json: bool) -> None:
    """Print output as JSON or human-readable format."""
    if as_json:
        json.dump(data, sys.stdout, indent=2, default=str)
        print()
    else:
        if isinstance(data, dict):
            for key, value in data.items():
                print(f"{key}: {value}")
        elif isinstance(data, list):
            for item in data:
                print(item)
        else:
            print(data)


def open_manager(args: argparse.Namespace) -> PlaybookManager:
    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config.logging.level, json_format=config.logging.format == "json")
    return PlaybookManager(base_dir=args.base_dir, config=config)


def cmd_status(args: argparse.Namespace) -> None:
    """Show playbook statistics."""
    with open_manager(args) as manager:
        stats = manager.get_stats()
        data = {"version": manager.version, **stats.model_dump(mode="json")}

    if args.json:
        print_output(data, as_json=True)
        return
    print(f"Playbook Version: {data['version']}")
    print(f"Total Bullets: {stats.total}")
    print(f"Sessions: {stats.total_sessions}")
    print(f"Success Rate: {stats.overall_success_rate:.1%}")
    print("\nBy Category:")
    for category, count in stats.by_category.items():
        print(f"  {category.value}: {count}")
    if stats.tool_usage:
        print("\nTool Usage:")
        for tool, count in stats.tool_usage.items():
            print(f"  {tool}: {count}")


def cmd_query(args: argparse.Namespace) -> None:
    """Retrieve bullets matching a query."""
    with open_manager(args) as manager:
        bullets = manager.query_bullets(args.query, limit=args.limit)

    if args.json:
        print_output([b.model_dump(mode="json") for b in bullets], as_json=True)
    else:
        print(f"Found {len(bullets)} bullets:")
        for bullet in bullets:
            meta = bullet.metadata
            print(f"\n[{bullet.id}] ({bullet.category.value})")
            print(f"  {bullet.content}")
            print(f"  Tags: {', '.join(bullet.tags)}")
            print(
                f"  References: {meta.reference_count} | "
                f"Success: {meta.success_count} | Failure: {meta.failure_count}"
            )


def cmd_merge(args: argparse.Namespace) -> None:
    """Apply a delta document to the playbook."""
    try:
        delta = DeltaRequest.model_validate(read_json_input(args.delta))
    except (json.JSONDecodeError, ValidationError) as e:
        print(f"Invalid delta: {e}", file=sys.stderr)
        sys.exit(1)

    with open_manager(args) as manager:
        summary = manager.merge(delta)
    print_summary(summary, args.json)


def cmd_learn(args: argparse.Namespace) -> None:
    """Curate raw insights into bullets and merge them."""
    try:
        data = read_json_input(args.insights)
        if isinstance(data, dict):
            data = data.get("insights", [])
        insights = [RawInsight.model_validate(item) for item in data]
    except (json.JSONDecodeError, ValidationError) as e:
        print(f"Invalid insights: {e}", file=sys.stderr)
        sys.exit(1)

    delta = learning_delta(
        insights,
        args.session_id,
        used_bullet_ids=args.used,
        success=not args.failed,
        min_importance=args.min_importance,
    )
    with open_manager(args) as manager:
        summary = manager.merge(delta)
    print_summary(summary, args.json)


def print_summary(summary: MergeSummary, as_json: bool) -> None:
    if as_json:
        print_output(summary.model_dump(mode="json"), as_json=True)
    else:
        print(f"Version: {summary.version} (changed: {summary.changed})")
        print(f"Added: {len(summary.added_ids)} | Updated: {len(summary.updated_ids)}")
        for rejected in summary.rejected:
            print(f"  Rejected #{rejected.index}: {rejected.message}")
        for stale in summary.stale_updates:
            print(f"  Stale update: {stale}")
        if summary.compacted:
            print(f"Compacted: {summary.compacted}")


def cmd_clear(args: argparse.Namespace) -> None:
    """Reset the playbook to empty."""
    with open_manager(args) as manager:
        removed = manager.get_stats().total
        manager.clear(archive=args.archive)
        data = {"removed": removed, "archived": args.archive, "version": manager.version}
    print_output(data, as_json=args.json)


def cmd_optimize(args: argparse.Namespace) -> None:
    """Run one optimizer pass."""
    with open_manager(args) as manager:
        result = manager.optimize()
    if args.json:
        print_output(result.model_dump(mode="json"), as_json=True)
    else:
        print(f"Merged: {result.merged} | Evicted: {result.evicted}")
        print(f"Version: {result.version} ({result.duration_ms:.1f}ms)")


def cmd_version(args: argparse.Namespace) -> None:
    """Print the version."""
    print(f"ace-playbook {__version__}")


def main() -> NoReturn:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="ace-playbook",
        description="ACE Playbook - self-curating bullet knowledge store",
    )
    parser.add_argument("--config", help="Path to TOML config (default: configs/default.toml)")
    parser.add_argument("--base-dir", help="Storage directory (overrides config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show playbook statistics")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    query_parser = subparsers.add_parser("query", help="Retrieve bullets matching a query")
    query_parser.add_argument("query", help="Query string")
    query_parser.add_argument("--limit", type=int, default=None, help="Number of results")
    query_parser.add_argument("--json", action="store_true", help="Output as JSON")
    query_parser.set_defaults(func=cmd_query)

    merge_parser = subparsers.add_parser("merge", help="Apply a delta to the playbook")
    merge_parser.add_argument("--delta", help="Path to delta JSON (or '-' for stdin)")
    merge_parser.add_argument("--json", action="store_true", help="Output as JSON")
    merge_parser.set_defaults(func=cmd_merge)

    learn_parser = subparsers.add_parser("learn", help="Curate raw insights and merge them")
    learn_parser.add_argument(
        "--insights", help="Path to insights JSON list (or '-' for stdin)"
    )
    learn_parser.add_argument("--session-id", default="", help="Session the insights came from")
    learn_parser.add_argument(
        "--used", action="append", default=[], help="Id of a bullet used in the session"
    )
    learn_parser.add_argument(
        "--failed", action="store_true", help="Record the used bullets as failed"
    )
    learn_parser.add_argument(
        "--min-importance", type=float, default=0.5, help="Drop insights below this importance"
    )
    learn_parser.add_argument("--json", action="store_true", help="Output as JSON")
    learn_parser.set_defaults(func=cmd_learn)

    clear_parser = subparsers.add_parser("clear", help="Reset the playbook")
    clear_parser.add_argument(
        "--no-archive",
        action="store_false",
        dest="archive",
        help="Do not snapshot the playbook before clearing",
    )
    clear_parser.add_argument("--json", action="store_true", help="Output as JSON")
    clear_parser.set_defaults(func=cmd_clear)

    optimize_parser = subparsers.add_parser("optimize", help="Run one optimizer pass")
    optimize_parser.add_argument("--json", action="store_true", help="Output as JSON")
    optimize_parser.set_defaults(func=cmd_optimize)

    version_parser = subparsers.add_parser("version", help="Print the version")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args()
    try:
        args.func(args)
    except PlaybookError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
