"""Keeps task code anchors pointing at the lines that carry their keys.

States per (task, file) anchor:
- confirmed: the recorded line still holds the key
- drifted: the key moved; found within the nearby window or, failing that,
  at the nearest occurrence anywhere in the file
- renamed: git reports the file moved; the path is remapped first, then the
  line is re-checked in the new file
- missing: no occurrence anywhere; the anchor is kept as is
- unreadable: the file could not be read this time; the anchor is kept

Only the latest anchor per (task, file) survives a confirmation. With
reanchor on, only the most recently confirmed anchor per task survives.
"""
from __future__ import annotations

import functools
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Set, Tuple

from _fs import NotTextError, read_source_text, split_lines
from refs import CodeAnchor

from .tasks import KeyedLocks, TaskApi


class AnchorState(str, Enum):
    CONFIRMED = "confirmed"
    DRIFTED = "drifted"
    MISSING = "missing"
    RENAMED = "renamed"
    UNREADABLE = "unreadable"


@functools.lru_cache(maxsize=4096)
def _key_pattern(key: str) -> Pattern[str]:
    return re.compile(rf"(?<![A-Za-z0-9_-]){re.escape(key)}(?![A-Za-z0-9_])")


def line_contains_key(line: str, key: str) -> bool:
    """True for `(KEY)`, `[ticket=KEY]` or KEY standing as its own token."""
    return bool(_key_pattern(key).search(line))


def find_nearby(lines: Sequence[str], expected_line: int, key: str, max_radius: int) -> Optional[int]:
    """1-based line holding `key` closest to `expected_line`, within `max_radius`.

    Checks the expected line, then expected+1, expected-1, expected+2, ...
    Lines past either end of the file are skipped.
    """
    total = len(lines)
    for distance in range(0, max(0, max_radius) + 1):
        for line_number in ((expected_line,) if distance == 0 else (expected_line + distance, expected_line - distance)):
            if 1 <= line_number <= total and line_contains_key(lines[line_number - 1], key):
                return line_number
    return None


def find_nearest(lines: Sequence[str], expected_line: int, key: str) -> Optional[int]:
    best: Optional[int] = None
    for idx, text in enumerate(lines):
        if not line_contains_key(text, key):
            continue
        line_number = idx + 1
        if best is None or abs(line_number - expected_line) <= abs(best - expected_line):
            best = line_number
    return best


@dataclass(frozen=True)
class ConfirmResult:
    appended: bool
    pruned: int


@dataclass(frozen=True)
class AnchorCheck:
    key: str
    anchor: CodeAnchor
    state: AnchorState
    new_anchor: Optional[CodeAnchor] = None
    pruned: bool = False
    message: str = ""

    @property
    def moved(self) -> bool:
        return self.new_anchor is not None and self.new_anchor != self.anchor


class AnchorReconciler:
    def __init__(
        self,
        tasks: TaskApi,
        repo: Path,
        *,
        radius: int,
        reanchor: bool = False,
        renames: Optional[Dict[str, str]] = None,
        warnings: Optional[List[str]] = None,
        locks: Optional[KeyedLocks] = None,
        dry_run: bool = False,
    ):
        self.tasks = tasks
        self.repo = repo.resolve()
        self.radius = radius
        self.reanchor = reanchor
        self.renames = dict(renames or {})
        self.warnings = warnings if warnings is not None else []
        self.locks = locks or KeyedLocks()
        self.dry_run = dry_run
        self._seq_lock = threading.Lock()
        self._seq = 0
        self.confirmed: Set[Tuple[str, str]] = set()
        self._latest: Dict[str, Tuple[int, CodeAnchor]] = {}

    def absolute(self, file_path: str) -> Path:
        path = Path(file_path)
        return path if path.is_absolute() else self.repo / path

    def _record(self, key: str, anchor: CodeAnchor) -> None:
        with self._seq_lock:
            self._seq += 1
            self.confirmed.add((key, anchor.file_path))
            self._latest[key] = (self._seq, anchor)

    def _prune_same_file(self, key: str, keep: CodeAnchor) -> int:
        pruned = 0
        for anchor in self.tasks.code_anchors(key):
            if anchor.file_path == keep.file_path and anchor != keep:
                if self.dry_run or self.tasks.remove_code_anchor(key, anchor.file_path, anchor.line_number):
                    pruned += 1
        return pruned

    def confirm(self, key: str, file_path: str, line: int) -> ConfirmResult:
        """Record that `key` was seen at file_path:line during this scan."""
        anchor = CodeAnchor(file_path, line)
        with self.locks.hold(key):
            self._record(key, anchor)
            exists = anchor in self.tasks.code_anchors(key)
            pruned = self._prune_same_file(key, anchor)
            if not exists and not self.dry_run:
                self.tasks.append_code_anchor(key, file_path, line)
            return ConfirmResult(appended=not exists, pruned=pruned)

    def check(self, key: str, anchor: CodeAnchor) -> AnchorCheck:
        """Classify one anchor without touching the task store."""
        renamed_to = self.renames.get(anchor.file_path)
        current = anchor.renamed_to(renamed_to) if renamed_to else anchor
        path = self.absolute(current.file_path)
        if not path.exists():
            return AnchorCheck(key, anchor, AnchorState.MISSING, current if renamed_to else None, message="file not found")
        try:
            lines = [content for content, _ in split_lines(read_source_text(path))]
        except (OSError, NotTextError) as exc:
            return AnchorCheck(key, anchor, AnchorState.UNREADABLE, message=str(exc))
        found = find_nearby(lines, current.line_number, key, self.radius)
        if found is None:
            found = find_nearest(lines, current.line_number, key)
        if found is None:
            return AnchorCheck(
                key, anchor, AnchorState.MISSING, current if renamed_to else None, message="key not found in file"
            )
        new_anchor = current.moved_to(found)
        if renamed_to:
            state = AnchorState.RENAMED
        elif found == anchor.line_number:
            state = AnchorState.CONFIRMED
        else:
            state = AnchorState.DRIFTED
        return AnchorCheck(key, anchor, state, new_anchor)

    def _under_roots(self, anchor: CodeAnchor, roots: Sequence[Path]) -> bool:
        candidates = [anchor.file_path]
        if anchor.file_path in self.renames:
            candidates.append(self.renames[anchor.file_path])
        for candidate in candidates:
            path = self.absolute(candidate).resolve()
            if any(path == root or root in path.parents for root in roots):
                return True
        return False

    def _move(self, key: str, old: CodeAnchor, new: CodeAnchor) -> None:
        if self.dry_run:
            return
        if new not in self.tasks.code_anchors(key):
            self.tasks.append_code_anchor(key, new.file_path, new.line_number)
        self.tasks.remove_code_anchor(key, old.file_path, old.line_number)

    def reconcile_task(self, key: str, roots: Sequence[Path]) -> List[AnchorCheck]:
        results: List[AnchorCheck] = []
        with self.locks.hold(key):
            kept_files = {file_path for task_key, file_path in self.confirmed if task_key == key}
            # Newest first, so the latest anchor per file is the one kept.
            for anchor in reversed(self.tasks.code_anchors(key)):
                if not self._under_roots(anchor, roots):
                    continue
                effective = self.renames.get(anchor.file_path, anchor.file_path)
                if (key, anchor.file_path) in self.confirmed and anchor.file_path == effective:
                    continue
                if effective in kept_files:
                    if not self.dry_run:
                        self.tasks.remove_code_anchor(key, anchor.file_path, anchor.line_number)
                    state = AnchorState.RENAMED if effective != anchor.file_path else AnchorState.CONFIRMED
                    results.append(
                        AnchorCheck(key, anchor, state, pruned=True, message=f"superseded by anchor in {effective}")
                    )
                    continue
                result = self.check(key, anchor)
                kept_files.add(effective)
                if result.state is AnchorState.UNREADABLE:
                    self.warnings.append(f"Kept anchor {key} -> {anchor.file_path}: {result.message}")
                elif result.moved and result.new_anchor is not None:
                    self._move(key, anchor, result.new_anchor)
                results.append(result)
        return results

    def reconcile_unconfirmed(self, roots: Iterable[Path]) -> List[AnchorCheck]:
        """Re-check every anchor under `roots` that this scan did not confirm."""
        resolved = [Path(root).resolve() for root in roots]
        results: List[AnchorCheck] = []
        for key in self.tasks.anchored_tasks():
            results.extend(self.reconcile_task(key, resolved))
        return results

    def apply_reanchor(self) -> List[AnchorCheck]:
        """Keep one anchor per task: the latest confirmed, else the last recorded."""
        results: List[AnchorCheck] = []
        for key in self.tasks.anchored_tasks():
            with self.locks.hold(key):
                anchors = self.tasks.code_anchors(key)
                if len(anchors) <= 1:
                    continue
                latest = self._latest.get(key)
                keep = latest[1] if latest and latest[1] in anchors else anchors[-1]
                for anchor in anchors:
                    if anchor == keep:
                        continue
                    if not self.dry_run:
                        self.tasks.remove_code_anchor(key, anchor.file_path, anchor.line_number)
                    results.append(
                        AnchorCheck(
                            key, anchor, AnchorState.CONFIRMED, pruned=True, message=f"reanchored to {keep.to_ref()['code']}"
                        )
                    )
        return results
