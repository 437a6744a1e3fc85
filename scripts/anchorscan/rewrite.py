"""Minimal in-place edits to comment lines.

Every edit is a splice on one line: a column range and its replacement. Bytes
outside the spliced ranges, including line endings, are written back as read.
All splices for a file are applied in one write.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from _fs import join_lines, read_source_text, split_lines, write_text_atomic

from .attributes import bracket_blocks
from .lines import KeyMatch
from .reconcile import line_contains_key


@dataclass(frozen=True)
class Splice:
    start: int
    end: int
    text: str = ""


def apply_splices(line: str, splices: Sequence[Splice]) -> str:
    ordered = sorted(splices, key=lambda item: (item.start, item.end))
    for left, right in zip(ordered, ordered[1:]):
        if right.start < left.end:
            raise ValueError(f"overlapping edits at columns {left.start}-{left.end} and {right.start}-{right.end}")
    for splice in reversed(ordered):
        line = line[: splice.start] + splice.text + line[splice.end :]
    return line


def rewrite_line(original_text: str, splices: Sequence[Splice]) -> str:
    """New text for a line; equal to `original_text` when there is nothing to do."""
    if not splices:
        return original_text
    return apply_splices(original_text, splices)


def render_key(key: str, insertion_format: str) -> str:
    return insertion_format.replace("{key}", key)


def insert_key(line: str, signal_end: int, key: str, insertion_format: str) -> Optional[Splice]:
    """Splice that writes `key` right after the signal word, or None if already there."""
    if line_contains_key(line, key):
        return None
    return Splice(signal_end, signal_end, render_key(key, insertion_format))


def _removal(line: str, start: int, end: int, limit: int) -> Splice:
    # Take one separating space with the removed text when it sat between words.
    if start > 0 and line[start - 1] in " \t" and (end >= limit or line[end] in " \t"):
        start -= 1
    return Splice(start, end)


def strip_key(line: str, match: KeyMatch, limit: Optional[int] = None) -> Splice:
    return _removal(line, match.form_start, match.form_end, len(line) if limit is None else limit)


def attribute_splices(line: str, start: int, end: int) -> List[Splice]:
    """Removals for `[k=v]` blocks inside line[start:end]."""
    splices: List[Splice] = []
    for block_start, block_end, inner in bracket_blocks(line[start:end]):
        if "=" not in inner:
            continue
        splices.append(_removal(line, start + block_start, start + block_end, end))
    return splices


class FileEdits:
    """Edits for one file, committed with a single write."""

    def __init__(self, path: Path):
        self.path = path
        self._edits: Dict[int, Tuple[str, List[Splice]]] = {}

    def __len__(self) -> int:
        return len(self._edits)

    def add(self, line_number: int, original_text: str, splices: Sequence[Splice]) -> None:
        if not splices:
            return
        if line_number in self._edits:
            known, existing = self._edits[line_number]
            if known != original_text:
                raise ValueError(f"{self.path}:{line_number} queued with two different originals")
            existing.extend(splices)
        else:
            self._edits[line_number] = (original_text, list(splices))

    def preview(self) -> Dict[int, Tuple[str, str]]:
        return {
            line_number: (original, rewrite_line(original, splices))
            for line_number, (original, splices) in sorted(self._edits.items())
        }

    def commit(self) -> Tuple[List[int], List[int]]:
        """Write the edits; returns (applied line numbers, stale line numbers).

        A queued line whose current text no longer matches what was scanned is
        stale and left alone. Nothing is written when no line changes. Raises
        OSError (or NotTextError) with the file left as it was.
        """
        if not self._edits:
            return [], []
        text = read_source_text(self.path)
        pairs = split_lines(text)
        applied: List[int] = []
        stale: List[int] = []
        for line_number, (original, splices) in sorted(self._edits.items()):
            idx = line_number - 1
            if idx >= len(pairs) or pairs[idx][0] != original:
                stale.append(line_number)
                continue
            updated = rewrite_line(original, splices)
            if updated != original:
                pairs[idx] = (updated, pairs[idx][1])
                applied.append(line_number)
        new_text = join_lines(pairs)
        if new_text != text:
            write_text_atomic(self.path, new_text)
        return applied, stale
