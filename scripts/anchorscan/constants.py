from __future__ import annotations

from typing import Tuple

EXCLUDE_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".tasks",
    ".beads",
    ".code-state",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".tox",
    ".venv",
    "__pycache__",
    "node_modules",
}

IGNORE_FILES: Tuple[str, ...] = (".gitignore", ".lotarignore")
CONFIG_FILES: Tuple[str, ...] = (".lotar.json", "lotar.json")

DEFAULT_SIGNAL_WORDS: Tuple[str, ...] = ("TODO", "FIXME", "HACK", "BUG", "NOTE")
DEFAULT_ISSUE_TYPES: Tuple[str, ...] = ("Feature", "Bug", "Chore")
DEFAULT_TICKET_PATTERN = r"\b([A-Z][A-Z0-9]+-\d+)\b"
DEFAULT_INSERTION_FORMAT = "({key})"
DEFAULT_SEARCH_RADIUS = 7
DEFAULT_TASKS_FILE = ".tasks/tasks.json"
DEFAULT_PROJECT = "TASK"
