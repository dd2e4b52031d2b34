"""MCP tool definitions wrapping the context recorder."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from .models import (
    ContextEntry,
    ContextMetadata,
    ContextType,
    FileAssociation,
    SearchOptions,
    parse_timestamp,
)
from .recorder import ContextRecorder
from .storage import StorageError

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_TYPE_ENUM = [t.value for t in ContextType]


def parse_bound(value: Optional[str], end: bool = False) -> Optional[datetime]:
    """Parse a date or timestamp argument.

    A bare YYYY-MM-DD used as an end bound covers that whole day.
    """
    if not value:
        return None
    dt = parse_timestamp(value)
    if end and _DATE_ONLY.match(value):
        dt = dt + timedelta(days=1) - timedelta(milliseconds=1)
    return dt


def _summaries(entries: list[ContextEntry]) -> list[dict]:
    return [e.to_dict() for e in entries]


def make_tools(recorder: ContextRecorder) -> dict[str, dict]:
    """Create MCP tool definitions for the context recorder.

    Returns:
        Dict mapping tool names to their definitions.
    """

    tools = {}

    tools["context_add"] = {
        "name": "context_add",
        "description": "Record a context note, optionally attached to files, a commit, tags and links.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "The note text (or transcript for voice notes)",
                },
                "type": {
                    "type": "string",
                    "enum": _TYPE_ENUM,
                    "description": "Kind of note (default: text)",
                },
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "file_path": {"type": "string"},
                            "line_start": {"type": "integer"},
                            "line_end": {"type": "integer"},
                            "content_hash": {"type": "string"},
                        },
                        "required": ["file_path"],
                    },
                    "description": "Project-relative files this note is about",
                },
                "tags": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Short labels for the note",
                },
                "author": {"type": "string", "description": "Who wrote the note"},
                "email": {"type": "string", "description": "Author email"},
                "commit_hash": {"type": "string", "description": "Commit the note refers to"},
                "branch": {"type": "string", "description": "Branch the note refers to"},
                "links": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Related URLs",
                },
                "timestamp": {
                    "type": "string",
                    "description": "ISO 8601 time the note refers to (default: now)",
                },
            },
            "required": ["content"],
        },
    }

    tools["context_get"] = {
        "name": "context_get",
        "description": "Get one context entry by ID.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Entry ID"},
            },
            "required": ["id"],
        },
    }

    tools["context_search"] = {
        "name": "context_search",
        "description": "Fuzzy full-text search over content, tags, file paths and authors, with optional filters.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search text (typos and prefixes tolerated)"},
                "file_pattern": {"type": "string", "description": "Regex any associated file must match"},
                "types": {
                    "type": "array",
                    "items": {"type": "string", "enum": _TYPE_ENUM},
                    "description": "Only these entry types",
                },
                "tags": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Entries with any of these tags",
                },
                "author": {"type": "string", "description": "Exact author"},
                "date_from": {"type": "string", "description": "Start date/time (inclusive)"},
                "date_to": {"type": "string", "description": "End date/time (inclusive)"},
                "limit": {"type": "integer", "description": "Maximum index hits (default: 50)"},
                "offset": {"type": "integer", "description": "Skip this many results"},
            },
            "required": ["query"],
        },
    }

    tools["context_related"] = {
        "name": "context_related",
        "description": "Find entries similar to a given entry.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Entry ID"},
                "limit": {"type": "integer", "description": "Maximum results (default: 5)"},
            },
            "required": ["id"],
        },
    }

    tools["context_by_tags"] = {
        "name": "context_by_tags",
        "description": "Entries carrying any of the given tags.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["tags"],
        },
    }

    tools["context_recent"] = {
        "name": "context_recent",
        "description": "Most recent entries by timestamp.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Maximum results (default: 10)"},
            },
        },
    }

    tools["context_by_author"] = {
        "name": "context_by_author",
        "description": "Entries written by exactly this author.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "author": {"type": "string"},
            },
            "required": ["author"],
        },
    }

    tools["context_by_commit"] = {
        "name": "context_by_commit",
        "description": "Entries recorded against a commit hash.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "commit_hash": {"type": "string"},
            },
            "required": ["commit_hash"],
        },
    }

    tools["context_by_date_range"] = {
        "name": "context_by_date_range",
        "description": "Entries between two dates/times, inclusive, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "date_from": {"type": "string", "description": "YYYY-MM-DD or ISO 8601"},
                "date_to": {"type": "string", "description": "YYYY-MM-DD or ISO 8601"},
            },
            "required": ["date_from", "date_to"],
        },
    }

    tools["context_timeline"] = {
        "name": "context_timeline",
        "description": "Timeline of all entries attached to one file, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Project-relative file path"},
            },
            "required": ["file_path"],
        },
    }

    tools["context_analytics"] = {
        "name": "context_analytics",
        "description": "Totals by type, most annotated files, 30-day trend, top authors.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["context_suggest"] = {
        "name": "context_suggest",
        "description": "Search completions for a partially typed query.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "partial": {"type": "string"},
                "limit": {"type": "integer", "description": "Maximum suggestions (default: 10)"},
            },
            "required": ["partial"],
        },
    }

    tools["context_update"] = {
        "name": "context_update",
        "description": "Correct the content of an entry. No other field can be changed.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "content": {"type": "string"},
            },
            "required": ["id", "content"],
        },
    }

    tools["context_delete"] = {
        "name": "context_delete",
        "description": "Permanently delete an entry and its file associations, tags and links.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
            },
            "required": ["id"],
        },
    }

    tools["context_export"] = {
        "name": "context_export",
        "description": "Export every entry as JSON, newest first. Optionally write it to a file.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File to write (relative to project root)"},
            },
        },
    }

    tools["context_import"] = {
        "name": "context_import",
        "description": "Import entries from a context_export JSON file. Existing IDs are skipped.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File to read (relative to project root)"},
            },
            "required": ["path"],
        },
    }

    tools["context_add_decision"] = {
        "name": "context_add_decision",
        "description": "Record a decision with its reasoning and the alternatives that were rejected.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "decision": {"type": "string", "description": "What was decided"},
                "reasoning": {"type": "string", "description": "Why"},
                "file_paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Files the decision affects",
                },
                "alternatives": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Options considered and rejected",
                },
                "tags": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Tags (default: decision)",
                },
                "links": {"type": "array", "items": {"type": "string"}},
                "author": {"type": "string"},
            },
            "required": ["decision", "reasoning"],
        },
    }

    tools["context_link_ticket"] = {
        "name": "context_link_ticket",
        "description": "Link an issue tracker ticket to a file.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "ticket_id": {"type": "string", "description": "Ticket key, e.g. PROJ-123"},
                "ticket_url": {"type": "string", "description": "Ticket URL"},
                "file_path": {"type": "string", "description": "Project-relative file path"},
                "summary": {"type": "string", "description": "Short summary of the ticket"},
            },
            "required": ["ticket_id", "ticket_url"],
        },
    }

    tools["context_add_voice_note"] = {
        "name": "context_add_voice_note",
        "description": "Record a voice note by its audio file, optionally with a transcript.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "audio_path": {"type": "string", "description": "Path of the recording"},
                "duration": {"type": "integer", "description": "Length in seconds"},
                "file_path": {"type": "string", "description": "Project-relative file path"},
                "transcript": {"type": "string"},
                "line_number": {"type": "integer"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["audio_path", "duration"],
        },
    }

    tools["index_rebuild"] = {
        "name": "index_rebuild",
        "description": "Rebuild the in-memory search index from the database.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    return tools


def _entry_from_arguments(arguments: dict[str, Any]) -> ContextEntry:
    timestamp = parse_bound(arguments.get("timestamp"))
    fields: dict[str, Any] = {}
    if timestamp is not None:
        fields["timestamp"] = timestamp
    return ContextEntry(
        content=arguments["content"],
        type=arguments.get("type", ContextType.TEXT.value),
        source=arguments.get("source", "api"),
        metadata=ContextMetadata(
            author=arguments.get("author"),
            email=arguments.get("email"),
            commit_hash=arguments.get("commit_hash"),
            branch=arguments.get("branch"),
            links=list(arguments.get("links") or []),
        ),
        tags=list(arguments.get("tags") or []),
        file_associations=[FileAssociation.from_dict(f) for f in arguments.get("files") or []],
        **fields,
    )


def _project_path(recorder: ContextRecorder, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = recorder.config.project_root / path
    return path


async def execute_tool(recorder: ContextRecorder, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Execute a context tool and return the result.

    Args:
        recorder: ContextRecorder instance
        name: Tool name
        arguments: Tool arguments

    Returns:
        Result dict with success status and data or error
    """
    try:
        if name == "context_add":
            entry = _entry_from_arguments(arguments)
            recorder.save(entry)
            return {
                "success": True,
                "id": entry.id,
                "message": f"Context {entry.id} recorded",
            }

        elif name == "context_get":
            entry = recorder.get(arguments["id"])
            if entry is None:
                return {
                    "success": False,
                    "error": f"Context not found: {arguments['id']}",
                    "error_type": "not_found",
                }
            return {"success": True, "entry": entry.to_dict()}

        elif name == "context_search":
            options = SearchOptions(
                file_pattern=arguments.get("file_pattern"),
                types=arguments.get("types") or [],
                tags=arguments.get("tags") or [],
                author=arguments.get("author"),
                date_from=parse_bound(arguments.get("date_from")),
                date_to=parse_bound(arguments.get("date_to"), end=True),
                limit=arguments.get("limit"),
                offset=arguments.get("offset", 0),
            )
            results = recorder.search(arguments["query"], options)
            return {
                "success": True,
                "count": len(results),
                "results": _summaries(results),
            }

        elif name == "context_related":
            results = recorder.find_related(arguments["id"], arguments.get("limit", 5))
            return {"success": True, "count": len(results), "results": _summaries(results)}

        elif name == "context_by_tags":
            results = recorder.search_by_tags(arguments["tags"])
            return {"success": True, "count": len(results), "results": _summaries(results)}

        elif name == "context_recent":
            results = recorder.get_recent(arguments.get("limit", 10))
            return {"success": True, "count": len(results), "results": _summaries(results)}

        elif name == "context_by_author":
            results = recorder.get_by_author(arguments["author"])
            return {"success": True, "count": len(results), "results": _summaries(results)}

        elif name == "context_by_commit":
            results = recorder.get_by_commit(arguments["commit_hash"])
            return {"success": True, "count": len(results), "results": _summaries(results)}

        elif name == "context_by_date_range":
            start = parse_bound(arguments["date_from"])
            end = parse_bound(arguments["date_to"], end=True)
            if start is None or end is None:
                raise ValueError("date_from and date_to must both be non-empty dates")
            results = recorder.get_by_date_range(start, end)
            return {"success": True, "count": len(results), "results": _summaries(results)}

        elif name == "context_timeline":
            timeline = recorder.get_file_timeline(arguments["file_path"])
            return {"success": True, **timeline.to_dict()}

        elif name == "context_analytics":
            return {"success": True, **recorder.get_analytics().to_dict()}

        elif name == "context_suggest":
            suggestions = recorder.get_suggestions(arguments["partial"], arguments.get("limit"))
            return {"success": True, "suggestions": suggestions}

        elif name == "context_update":
            updated = recorder.update_content(arguments["id"], arguments["content"])
            return {
                "success": updated,
                "id": arguments["id"],
                "message": "Content updated" if updated else f"Context not found: {arguments['id']}",
            }

        elif name == "context_delete":
            deleted = recorder.delete(arguments["id"])
            return {
                "success": deleted,
                "id": arguments["id"],
                "message": "Context deleted" if deleted else f"Context not found: {arguments['id']}",
            }

        elif name == "context_export":
            path = arguments.get("path")
            if path:
                target = _project_path(recorder, path)
                recorder.export_json(target)
                return {
                    "success": True,
                    "path": str(target),
                    "message": f"Exported contexts to {target}",
                }
            return {"success": True, "export": recorder.export_json()}

        elif name == "context_import":
            source = _project_path(recorder, arguments["path"])
            result = recorder.import_json(source.read_text(encoding="utf-8"))
            return {"success": True, **result}

        elif name == "context_add_decision":
            entry = recorder.add_decision(
                arguments["decision"],
                arguments["reasoning"],
                file_paths=arguments.get("file_paths"),
                alternatives=arguments.get("alternatives"),
                tags=arguments.get("tags"),
                links=arguments.get("links"),
                author=arguments.get("author"),
            )
            return {"success": True, "id": entry.id, "message": f"Decision {entry.id} recorded"}

        elif name == "context_link_ticket":
            entry = recorder.link_ticket(
                arguments["ticket_id"],
                arguments["ticket_url"],
                file_path=arguments.get("file_path"),
                summary=arguments.get("summary"),
            )
            return {
                "success": True,
                "id": entry.id,
                "message": f"Ticket {arguments['ticket_id']} linked",
            }

        elif name == "context_add_voice_note":
            entry = recorder.add_voice_note(
                arguments["audio_path"],
                int(arguments["duration"]),
                file_path=arguments.get("file_path"),
                transcript=arguments.get("transcript"),
                line_number=arguments.get("line_number"),
                tags=arguments.get("tags"),
            )
            return {"success": True, "id": entry.id, "message": f"Voice note {entry.id} recorded"}

        elif name == "index_rebuild":
            count = recorder.rebuild_index()
            return {
                "success": True,
                "documents_indexed": count,
                "message": f"Indexed {count} contexts",
            }

        else:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
            }

    except StorageError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": f"storage_error:{e.kind.value}",
        }

    except (KeyError, ValueError, re.error) as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "invalid_input",
        }

    except FileNotFoundError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "file_not_found",
        }

    except Exception as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "unexpected_error",
        }
