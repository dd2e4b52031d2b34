"""Context recorder MCP server and command line - Main entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
import sys
from pathlib import Path
from typing import Any, Optional

# MCP imports are optional - only needed when running the server
try:
    from mcp.server import Server  # pragma: no cover
    from mcp.server.stdio import stdio_server  # pragma: no cover
    from mcp.types import Tool, TextContent  # pragma: no cover
    HAS_MCP = True  # pragma: no cover
except ImportError:
    HAS_MCP = False
    Server = None  # type: ignore
    Tool = None  # type: ignore
    TextContent = None  # type: ignore

from .config import ProjectConfig, find_project_root, load_config, write_default_config
from .models import ContextEntry, ContextType, SearchOptions
from .recorder import ContextRecorder
from .storage import StorageError
from .tools import execute_tool, make_tools

logger = logging.getLogger(__name__)

MCP_MISSING = "MCP package not installed. Install with: pip install mcp-context-recorder[mcp]"


def create_server(recorder: ContextRecorder) -> "Server":
    """Create and configure the MCP server.

    Args:
        recorder: An initialized ContextRecorder

    Returns:
        Configured MCP Server instance

    Raises:
        ImportError: If MCP package is not installed
    """
    if not HAS_MCP:
        raise ImportError(MCP_MISSING)

    server = Server("context-recorder")
    tool_defs = make_tools(recorder)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return list of available tools."""
        return [
            Tool(
                name=t["name"],
                description=t["description"],
                inputSchema=t["inputSchema"],
            )
            for t in tool_defs.values()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool invocation."""
        result = await execute_tool(recorder, name, arguments or {})
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


async def run_server(config: ProjectConfig) -> None:
    """Run the MCP server with stdio transport."""
    if not HAS_MCP:
        raise ImportError(MCP_MISSING)

    recorder = ContextRecorder(config)  # pragma: no cover
    recorder.initialize()  # pragma: no cover
    try:  # pragma: no cover
        server = create_server(recorder)
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:  # pragma: no cover
        recorder.close()


# ========== Command line ==========

def _print_entries(entries: list[ContextEntry], width: int = 80) -> None:
    for i, entry in enumerate(entries, 1):
        text = entry.content.replace("\n", " ")
        if len(text) > width:
            text = text[:width] + "..."
        print(f"{i}. [{entry.type.value}] {text}")
        if entry.file_associations:
            print(f"   Files: {', '.join(entry.file_paths)}")
        print(f"   ID: {entry.id}  ({entry.timestamp.isoformat(timespec='seconds')})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-context-recorder",
        description="Record and search notes attached to files, commits and decisions",
    )
    parser.add_argument(
        "--project-root",
        "-p",
        type=Path,
        help="Project root directory (default: nearest directory with .git, else cwd)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config file (default: auto-detect in project root)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level on stderr (default: from config, else WARNING)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the MCP server on stdio (default)")
    sub.add_parser("init", help="Create the storage directory and .ccrrc.json")

    add = sub.add_parser("add", help="Record a note")
    add.add_argument("content", help="Note text")
    add.add_argument("--file", "-f", help="File the note is about")
    add.add_argument("--line", "-l", type=int, help="Line number in the file")
    add.add_argument("--tags", "-t", help="Comma-separated tags")
    add.add_argument("--type", default=ContextType.TEXT.value,
                     choices=[t.value for t in ContextType], help="Note type")
    add.add_argument("--author", "-a", help="Author name")

    search = sub.add_parser("search", help="Search notes")
    search.add_argument("query", help="Search text")
    search.add_argument("--file", "-f", help="Regex for associated file paths")
    search.add_argument("--type", action="append", choices=[t.value for t in ContextType],
                        help="Only this type (repeatable)")
    search.add_argument("--tag", action="append", help="Only entries with this tag (repeatable)")
    search.add_argument("--author", "-a", help="Exact author")
    search.add_argument("--limit", "-n", type=int, default=10, help="Maximum results")

    timeline = sub.add_parser("timeline", help="Show the notes for one file")
    timeline.add_argument("file_path", help="Project-relative file path")

    recent = sub.add_parser("recent", help="Show the newest notes")
    recent.add_argument("--limit", "-n", type=int, default=10, help="Maximum results")

    sub.add_parser("stats", help="Show analytics")

    export = sub.add_parser("export", help="Export all notes as JSON")
    export.add_argument("--output", "-o", type=Path, help="File to write (default: stdout)")

    imp = sub.add_parser("import", help="Import notes from an export file")
    imp.add_argument("input", type=Path, help="JSON file produced by export")

    sub.add_parser("rebuild-index", help="Rebuild the search index and report its size")

    return parser


def run_cli_command(args: argparse.Namespace, config: ProjectConfig) -> int:
    """Run one non-server subcommand against the project's store.

    Returns:
        Process exit code
    """
    as_json = getattr(args, "json", False)
    recorder = ContextRecorder(config)
    try:
        recorder.initialize()

        if args.command == "add":
            tags = [t for t in (args.tags or "").split(",") if t.strip()]
            entry = recorder.add_context(
                args.content,
                file_path=args.file,
                type=args.type,
                line_number=args.line,
                tags=tags,
                author=args.author,
                source="cli",
            )
            if as_json:
                print(json.dumps(entry.to_dict(), indent=2))
            else:
                print(f"Context added: {entry.id}")

        elif args.command == "search":
            results = recorder.search(args.query, SearchOptions(
                file_pattern=args.file,
                types=args.type or [],
                tags=args.tag or [],
                author=args.author,
                limit=args.limit,
            ))
            if as_json:
                print(json.dumps([e.to_dict() for e in results], indent=2))
            elif not results:
                print("No contexts found.")
            else:
                print(f"Found {len(results)} context(s):")
                print()
                _print_entries(results)

        elif args.command == "timeline":
            tl = recorder.get_file_timeline(args.file_path)
            if as_json:
                print(json.dumps(tl.to_dict(), indent=2))
            else:
                print(f"Timeline for {tl.file_path} ({tl.total_entries} entries):")
                print()
                _print_entries([t.entry for t in tl.entries], width=60)

        elif args.command == "recent":
            results = recorder.get_recent(args.limit)
            if as_json:
                print(json.dumps([e.to_dict() for e in results], indent=2))
            else:
                _print_entries(results)

        elif args.command == "stats":
            analytics = recorder.get_analytics()
            if as_json:
                print(json.dumps(analytics.to_dict(), indent=2))
            else:
                print("Code Context Recorder Statistics")
                print()
                print(f"Total contexts: {analytics.total_contexts}")
                print()
                print("By type:")
                for type_name, count in sorted(analytics.contexts_by_type.items()):
                    print(f"  {type_name}: {count}")
                print()
                print("Most contexted files:")
                for item in analytics.most_contexted_files[:5]:
                    print(f"  {item['file']}: {item['count']}")
                if analytics.top_authors:
                    print()
                    print("Top authors:")
                    for item in analytics.top_authors:
                        print(f"  {item['author']}: {item['count']}")
                print()
                print(f"Average contexts per commit: {analytics.average_contexts_per_commit:.2f}")

        elif args.command == "export":
            if args.output:
                recorder.export_json(args.output)
                print(f"Exported contexts to {args.output}")
            else:
                print(recorder.export_json())

        elif args.command == "import":
            result = recorder.import_json(args.input.read_text(encoding="utf-8"))
            print(f"Imported {result['imported']} context(s), skipped {result['skipped']}")

        elif args.command == "rebuild-index":
            count = recorder.rebuild_index()
            print(f"Indexed {count} context(s)")

        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            return 2

    except (StorageError, ValueError, OSError, re.error) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        recorder.close()

    return 0


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    project_root = (args.project_root or find_project_root()).resolve()

    if args.command == "init":
        configure_logging(args.log_level or "WARNING")
        config = ProjectConfig(project_name=project_root.name, project_root=project_root)
        config.get_storage_path().mkdir(parents=True, exist_ok=True)
        print(f"Created {config.get_storage_path()}")
        written = write_default_config(project_root)
        if written:
            print(f"Created {written}")
        print(f"Context recorder initialized in {project_root}")
        return

    try:
        config = load_config(project_root, args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(args.log_level or config.log_level)
    logger.debug("Using project root %s", project_root)

    if args.command in (None, "serve"):
        if not HAS_MCP:
            print("Error: MCP package not installed.", file=sys.stderr)
            print("Install with: pip install mcp-context-recorder[mcp]", file=sys.stderr)
            sys.exit(1)
        asyncio.run(run_server(config))
        return

    sys.exit(run_cli_command(args, config))


if __name__ == "__main__":  # pragma: no cover
    main()
