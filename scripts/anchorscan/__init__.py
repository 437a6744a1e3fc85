from __future__ import annotations

from .attributes import (
    bracket_blocks,
    parse_inline_attributes,
    seed_fields,
    split_tags,
    strip_bracket_attributes,
)
from .constants import (
    CONFIG_FILES,
    DEFAULT_INSERTION_FORMAT,
    DEFAULT_SEARCH_RADIUS,
    DEFAULT_SIGNAL_WORDS,
    DEFAULT_TASKS_FILE,
    DEFAULT_TICKET_PATTERN,
    EXCLUDE_DIRS,
    IGNORE_FILES,
)
from .core import (
    ScanEntry,
    ScanOptions,
    ScanResult,
    ScanSession,
    ScanSummary,
    default_workers,
    scan_repo,
)
from .discovery import filter_by_extension, is_generated_noise_file, modified_files, walk
from .git import find_repo_root, parse_porcelain_paths, parse_porcelain_renames, rename_map, status_paths
from .grammars import GRAMMARS, CommentGrammar, grammar_for, grammar_for_path, supported_extensions
from .ignore import IgnoreFilter
from .lines import CommentSpan, KeyMatch, LineScanner, MarkerCandidate, comment_spans
from .reconcile import (
    AnchorCheck,
    AnchorReconciler,
    AnchorState,
    find_nearby,
    find_nearest,
    line_contains_key,
)
from .repo_config import ScanConfig, ScanConfigError, compile_ticket_patterns, load_scan_config
from .resolve import Action, Resolution, ResolutionPolicy, resolve
from .rewrite import FileEdits, Splice, attribute_splices, insert_key, rewrite_line, strip_key
from .tasks import KeyedLocks, TaskApi, TaskNotFoundError, TaskStore, TaskStoreError
