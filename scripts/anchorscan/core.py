from __future__ import annotations

import functools
import os
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from _fs import NotTextError
from refs import normalize_path
from utils import ToolState, plural, progress

from .attributes import seed_fields, strip_bracket_attributes
from .discovery import modified_files, walk
from .git import find_repo_root, rename_map
from .grammars import CommentGrammar, grammar_for_path
from .lines import KEY_FORM_BARE, LineScanner, MarkerCandidate
from .reconcile import AnchorCheck, AnchorReconciler, AnchorState
from .repo_config import ScanConfig
from .resolve import Action, ResolutionPolicy, resolve
from .rewrite import FileEdits, Splice, attribute_splices, insert_key, strip_key
from .tasks import KeyedLocks, TaskApi, TaskStoreError

STATUS_CREATED = "created"
STATUS_UPDATED = "updated"
STATUS_UNCHANGED = "unchanged"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


def default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 2))


@dataclass
class ScanOptions:
    repo: Path
    roots: List[Path] = field(default_factory=list)
    create_tasks: bool = False
    reanchor: bool = False
    dry_run: bool = False
    include_ext: List[str] = field(default_factory=list)
    exclude_ext: List[str] = field(default_factory=list)
    modified_only: bool = False
    workers: int = field(default_factory=default_workers)
    cancel: Optional[threading.Event] = None
    show_progress: bool = False


@dataclass
class ScanEntry:
    file: str
    line: int
    column: int
    signal: Optional[str]
    existing_key: Optional[str]
    action: str
    status: str
    task_key: Optional[str] = None
    original_line: str = ""
    updated_line: Optional[str] = None
    message: str = ""


@dataclass
class ScanSummary:
    files_scanned: int = 0
    files_skipped: int = 0
    files_written: int = 0
    markers_found: int = 0
    mentions_found: int = 0
    tasks_created: int = 0
    anchors_confirmed: int = 0
    anchors_added: int = 0
    anchors_drifted: int = 0
    anchors_renamed: int = 0
    anchors_missing: int = 0
    anchors_unreadable: int = 0
    anchors_pruned: int = 0
    keys_stripped: int = 0
    unresolved: int = 0
    write_failures: int = 0
    cancelled: bool = False
    dry_run: bool = False

    def add(self, counts: Counter) -> None:
        for name, value in counts.items():
            setattr(self, name, getattr(self, name) + value)

    def to_dict(self) -> Dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass
class ScanResult:
    summary: ScanSummary
    entries: List[ScanEntry] = field(default_factory=list)
    anchor_checks: List[AnchorCheck] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "entries": [asdict(entry) for entry in self.entries],
            "anchors": [
                {
                    "task": check.key,
                    "file": check.anchor.file_path,
                    "line": check.anchor.line_number,
                    "state": check.state.value,
                    "new_file": check.new_anchor.file_path if check.new_anchor else None,
                    "new_line": check.new_anchor.line_number if check.new_anchor else None,
                    "pruned": check.pruned,
                    "message": check.message,
                }
                for check in self.anchor_checks
            ],
            "warnings": list(self.warnings),
        }


@dataclass
class FileOutcome:
    entries: List[ScanEntry] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)
    warnings: List[str] = field(default_factory=list)


def seed_title(candidate: MarkerCandidate, rel: str) -> str:
    if candidate.key_match is not None and candidate.key_match.form == KEY_FORM_BARE:
        # The leading token was not a live key, so it is part of the text.
        text = " ".join(strip_bracket_attributes(candidate.segment).split()).strip(" :-")
        if text:
            return text
    if candidate.title:
        return candidate.title
    span = candidate.comment_span
    whole = strip_bracket_attributes(candidate.line_text[span.body_start : span.body_end])
    whole = " ".join(whole.split()).strip(" :-")
    if whole and whole != candidate.signal_word:
        return whole
    return f"{candidate.signal_word or 'TODO'} in {rel}:{candidate.line_number}"


class ScanSession:
    """One scan over a set of roots.

    Files are scanned in parallel; each worker owns its file's edits and talks
    to the task store only through the reconciler, which serialises per task.
    """

    def __init__(
        self,
        options: ScanOptions,
        config: ScanConfig,
        tasks: TaskApi,
        *,
        tools: Optional[ToolState] = None,
    ):
        self.options = options
        self.config = config
        self.tasks = tasks
        self.tools = tools or ToolState()
        self.repo = options.repo.resolve()
        self.warnings: List[str] = []
        patterns = config.validate()
        self.scanner = LineScanner(
            config.effective_signal_words(), patterns, enable_mentions=config.enable_mentions
        )
        self.policy = ResolutionPolicy(
            create_tasks=options.create_tasks,
            enable_mentions=config.enable_mentions,
            strip_attributes=config.strip_attributes,
        )
        self.roots = self._resolve_roots(options.roots)
        self.git_root = find_repo_root(self.repo)
        self.reconciler = AnchorReconciler(
            tasks,
            self.repo,
            radius=config.search_radius,
            reanchor=options.reanchor,
            renames=self._renames(),
            warnings=self.warnings,
            locks=KeyedLocks(),
            dry_run=options.dry_run,
        )

    def _resolve_roots(self, roots: List[Path]) -> List[Path]:
        resolved: List[Path] = []
        for root in roots or [self.repo]:
            path = root if root.is_absolute() else self.repo / root
            if not path.exists():
                raise ValueError(f"Scan root not found: {root}")
            resolved.append(path.resolve())
        return resolved

    def _renames(self) -> Dict[str, str]:
        raw = rename_map(self.git_root, warnings=self.warnings, tools=self.tools)
        if not raw or self.git_root is None:
            return {}
        return {
            normalize_path(self.git_root / old, self.repo): normalize_path(self.git_root / new, self.repo)
            for old, new in raw.items()
        }

    def _cancelled(self) -> bool:
        return self.options.cancel is not None and self.options.cancel.is_set()

    def scan_file(self, path: Path, grammar: CommentGrammar) -> FileOutcome:
        outcome = FileOutcome()
        rel = normalize_path(path, self.repo)
        try:
            candidates = self.scanner.scan_file(path, grammar)
        except (OSError, NotTextError) as exc:
            outcome.warnings.append(f"Skipped {rel}: {exc}")
            outcome.counts["files_skipped"] += 1
            return outcome
        outcome.counts["files_scanned"] += 1

        edits = FileEdits(path)
        # Anchor operations that must wait until the line is on disk.
        pending: Dict[int, List[Tuple[ScanEntry, Callable[[], None]]]] = {}
        # Existing keys seen in this file, confirmed once per key after the pass.
        sightings: Dict[str, List[Tuple[ScanEntry, int]]] = {}

        for candidate in candidates:
            outcome.counts["mentions_found" if candidate.is_mention else "markers_found"] += 1
            entry = ScanEntry(
                file=rel,
                line=candidate.line_number,
                column=candidate.column,
                signal=candidate.signal_word,
                existing_key=candidate.existing_key,
                action=Action.IGNORE.value,
                status=STATUS_SKIPPED,
                original_line=candidate.line_text,
            )
            outcome.entries.append(entry)
            try:
                resolution = resolve(candidate, self.tasks, self.policy)
            except TaskStoreError as exc:
                entry.status = STATUS_FAILED
                entry.message = str(exc)
                outcome.counts["unresolved"] += 1
                continue
            entry.action = resolution.action.value
            entry.task_key = resolution.key
            entry.message = resolution.reason

            if resolution.action is Action.CREATE_AND_ANCHOR:
                self._create(candidate, entry, rel, edits, pending, outcome)
            elif resolution.action is Action.CONFIRM_ANCHOR and resolution.key:
                sightings.setdefault(resolution.key, []).append((entry, candidate.line_number))
            elif resolution.action is Action.PRUNE_STALE_KEY and candidate.key_match is not None:
                splice = strip_key(candidate.line_text, candidate.key_match, candidate.segment_end)
                edits.add(candidate.line_number, candidate.line_text, [splice])
                entry.status = STATUS_UPDATED
                entry.message = "stale key removed"
                outcome.counts["keys_stripped"] += 1
                line = candidate.line_number
                key = resolution.key or candidate.key_match.key
                pending.setdefault(line, []).append(
                    (entry, functools.partial(self._drop_stale, key, rel, line, outcome))
                )

        for key, hits in sightings.items():
            self._confirm(key, hits, rel, outcome)
        self._commit(edits, pending, outcome, rel)
        return outcome

    def _create(
        self,
        candidate: MarkerCandidate,
        entry: ScanEntry,
        rel: str,
        edits: FileEdits,
        pending: Dict[int, List[Tuple[ScanEntry, Callable[[], None]]]],
        outcome: FileOutcome,
    ) -> None:
        seed = seed_fields(seed_title(candidate, rel), candidate.inline_attributes)
        if self.options.dry_run:
            key = f"{self.config.project}-NEW"
        else:
            try:
                key = self.tasks.create_task(seed)
            except TaskStoreError as exc:
                entry.status = STATUS_FAILED
                entry.message = f"task creation failed: {exc}"
                outcome.counts["unresolved"] += 1
                return
        entry.task_key = key
        splices: List[Splice] = []
        splice = insert_key(candidate.line_text, candidate.signal_end, key, self.config.insertion_format)
        if splice is not None:
            splices.append(splice)
        if self.config.strip_attributes:
            splices.extend(attribute_splices(candidate.line_text, candidate.signal_end, candidate.segment_end))
        edits.add(candidate.line_number, candidate.line_text, splices)
        entry.status = STATUS_CREATED
        outcome.counts["tasks_created"] += 1
        line = candidate.line_number
        pending.setdefault(line, []).append(
            (entry, functools.partial(self._anchor_created, key, rel, line, entry, outcome))
        )

    def _anchor_created(self, key: str, rel: str, line: int, entry: ScanEntry, outcome: FileOutcome) -> None:
        try:
            result = self.reconciler.confirm(key, rel, line)
        except TaskStoreError as exc:
            entry.message = f"anchor not recorded: {exc}"
            outcome.counts["unresolved"] += 1
            return
        outcome.counts["anchors_added"] += int(result.appended)
        outcome.counts["anchors_pruned"] += result.pruned

    def _confirm(self, key: str, hits: List[Tuple[ScanEntry, int]], rel: str, outcome: FileOutcome) -> None:
        """Anchor `key` once in this file, at its last occurrence.

        The other occurrences are reported as unchanged and record nothing.
        """
        entry, line = max(hits, key=lambda hit: (hit[1], hit[0].column))
        try:
            result = self.reconciler.confirm(key, rel, line)
        except TaskStoreError as exc:
            for hit_entry, _ in hits:
                hit_entry.status = STATUS_FAILED
                hit_entry.message = str(exc)
                outcome.counts["unresolved"] += 1
            return
        for hit_entry, hit_line in hits:
            if hit_entry is not entry:
                hit_entry.status = STATUS_UNCHANGED
                hit_entry.message = f"anchored at line {line}" if hit_line != line else ""
        outcome.counts["anchors_confirmed"] += 1
        outcome.counts["anchors_added"] += int(result.appended)
        outcome.counts["anchors_pruned"] += result.pruned
        if result.appended and result.pruned:
            outcome.counts["anchors_drifted"] += 1
            entry.status = STATUS_UPDATED
            entry.message = "anchor moved"
        elif result.appended or result.pruned:
            entry.status = STATUS_UPDATED
            entry.message = "anchor recorded" if result.appended else "older anchors pruned"
        else:
            entry.status = STATUS_UNCHANGED

    def _drop_stale(self, key: str, rel: str, line: int, outcome: FileOutcome) -> None:
        try:
            if self.tasks.remove_code_anchor(key, rel, line):
                outcome.counts["anchors_pruned"] += 1
        except TaskStoreError as exc:
            outcome.warnings.append(f"Failed to drop anchor {key} -> {rel}:{line}: {exc}")

    def _commit(
        self,
        edits: FileEdits,
        pending: Dict[int, List[Tuple[ScanEntry, Callable[[], None]]]],
        outcome: FileOutcome,
        rel: str,
    ) -> None:
        preview = edits.preview()
        for line, ops in pending.items():
            if line in preview:
                for entry, _ in ops:
                    entry.updated_line = preview[line][1]
        if self.options.dry_run:
            for ops in pending.values():
                for entry, _ in ops:
                    entry.message = "dry run"
            return
        stale: Set[int] = set()
        if len(edits):
            try:
                applied, stale_lines = edits.commit()
            except (OSError, NotTextError) as exc:
                outcome.warnings.append(f"Failed to write {rel}: {exc}")
                outcome.counts["write_failures"] += 1
                for ops in pending.values():
                    for entry, _ in ops:
                        self._fail_pending(entry, outcome, f"write failed: {exc}")
                return
            stale = set(stale_lines)
            if applied:
                outcome.counts["files_written"] += 1
        for line, ops in pending.items():
            for entry, operation in ops:
                if line in stale:
                    self._fail_pending(entry, outcome, "line changed during scan")
                    continue
                operation()

    @staticmethod
    def _fail_pending(entry: ScanEntry, outcome: FileOutcome, message: str) -> None:
        if entry.status == STATUS_CREATED:
            message = f"{message}; task {entry.task_key} has no anchor"
        elif entry.action == Action.PRUNE_STALE_KEY.value:
            outcome.counts["keys_stripped"] -= 1
        entry.status = STATUS_FAILED
        entry.updated_line = None
        entry.message = message
        outcome.counts["unresolved"] += 1

    def run(self) -> ScanResult:
        summary = ScanSummary(dry_run=self.options.dry_run)
        result = ScanResult(summary=summary, warnings=self.warnings)
        only = None
        if self.options.modified_only:
            only = modified_files(self.git_root, self.warnings, self.tools)
        if self.options.show_progress:
            progress(f"Scanning {plural(len(self.roots), 'root')}")

        files = walk(
            self.roots,
            warnings=self.warnings,
            repo=self.repo,
            include_ext=self.options.include_ext,
            exclude_ext=self.options.exclude_ext,
            only=only,
        )
        outcomes: List[FileOutcome] = []
        with ThreadPoolExecutor(max_workers=max(1, int(self.options.workers))) as executor:
            futures: List[Future] = []
            for path in files:
                if self._cancelled():
                    summary.cancelled = True
                    break
                grammar = grammar_for_path(path)
                if grammar is None:
                    continue
                futures.append(executor.submit(self._scan_unless_cancelled, path, grammar))
            for future in as_completed(futures):
                outcome = future.result()
                if outcome is None:
                    summary.cancelled = True
                    continue
                outcomes.append(outcome)

        for outcome in outcomes:
            result.entries.extend(outcome.entries)
            summary.add(outcome.counts)
            self.warnings.extend(outcome.warnings)
        result.entries.sort(key=lambda entry: (entry.file, entry.line, entry.column))

        if not summary.cancelled:
            if self.options.show_progress:
                progress("Reconciling anchors")
            result.anchor_checks.extend(self.reconciler.reconcile_unconfirmed(self.roots))
            if self.options.reanchor:
                result.anchor_checks.extend(self.reconciler.apply_reanchor())
            self._count_checks(summary, result.anchor_checks)

        if self.options.show_progress:
            progress(
                f"Scanned {plural(summary.files_scanned, 'file')}, "
                f"{plural(summary.markers_found, 'marker')}",
                done=True,
            )
        return result

    def _scan_unless_cancelled(self, path: Path, grammar: CommentGrammar) -> Optional[FileOutcome]:
        if self._cancelled():
            return None
        return self.scan_file(path, grammar)

    @staticmethod
    def _count_checks(summary: ScanSummary, checks: List[AnchorCheck]) -> None:
        for check in checks:
            if check.state is AnchorState.RENAMED:
                summary.anchors_renamed += 1
                if check.pruned:
                    summary.anchors_pruned += 1
            elif check.pruned:
                summary.anchors_pruned += 1
            elif check.state is AnchorState.DRIFTED:
                summary.anchors_drifted += 1
            elif check.state is AnchorState.MISSING:
                summary.anchors_missing += 1
            elif check.state is AnchorState.UNREADABLE:
                summary.anchors_unreadable += 1


def scan_repo(
    options: ScanOptions,
    config: ScanConfig,
    tasks: TaskApi,
    *,
    tools: Optional[ToolState] = None,
) -> ScanResult:
    """Run one scan session. Raises ScanConfigError or ValueError before any file is touched."""
    return ScanSession(options, config, tasks, tools=tools).run()
