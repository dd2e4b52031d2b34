"""Context Recorder Configuration - Python Example

Copy to your project root as context_config.py.

Convention:
- CONFIG dict for static configuration (same structure as TOML/JSON)
- Functions named hook_<event> are called after that event:
  hook_entry_added(recorder, entry)
  hook_entry_deleted(recorder, context_id)
  hook_index_rebuilt(recorder, document_count)
"""

import sys

# =============================================================================
# Static Configuration (same structure as TOML)
# =============================================================================

CONFIG = {
    "project": {
        "name": "payments-service",
    },
    "storage": {
        "dir": ".ccr",
        "database": "contexts.db",
        "lock_timeout": 5,
    },
    "search": {
        "fuzzy": 0.2,
        "prefix": True,
        "boost": {"content": 2, "tags": 3, "file_path": 1.5},
        "default_limit": 50,
    },
    "analytics": {
        "trend_days": 14,
        "top_files": 10,
        "top_authors": 5,
    },
    "logging": {
        "level": "INFO",
    },
}


# =============================================================================
# Hooks - Called synchronously after recorder operations
# =============================================================================

def hook_entry_added(recorder, entry) -> None:
    """Warn when a decision is recorded without any file attached."""
    if entry.type.value == "decision" and not entry.file_associations:
        print(f"decision {entry.id} is not attached to any file", file=sys.stderr)


def hook_index_rebuilt(recorder, document_count) -> None:
    if document_count == 0:
        print("search index is empty; record a note with `mcp-context-recorder add`",
              file=sys.stderr)
