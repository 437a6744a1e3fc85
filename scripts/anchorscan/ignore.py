from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import pathspec

from .constants import IGNORE_FILES


@dataclass
class IgnoreLayer:
    base: Path
    spec: pathspec.PathSpec
    sources: List[str] = field(default_factory=list)

    def matches(self, path: Path, is_dir: bool) -> bool:
        try:
            rel = path.relative_to(self.base).as_posix()
        except ValueError:
            return False
        if rel in ("", "."):
            return False
        if is_dir:
            rel += "/"
        return self.spec.match_file(rel)


def read_ignore_lines(base: Path, warnings: List[str]) -> tuple[List[str], List[str]]:
    """Collect patterns from .gitignore then .lotarignore, in that order."""
    lines: List[str] = []
    sources: List[str] = []
    for name in IGNORE_FILES:
        path = base / name
        if not path.is_file():
            continue
        try:
            lines.extend(path.read_text(encoding="utf-8", errors="replace").splitlines())
        except OSError as exc:
            warnings.append(f"Failed to read {path}: {exc}")
            continue
        sources.append(path.as_posix())
    return lines, sources


def build_layer(base: Path, warnings: List[str], extra_patterns: Sequence[str] = ()) -> Optional[IgnoreLayer]:
    lines, sources = read_ignore_lines(base, warnings)
    lines.extend(extra_patterns)
    if not lines:
        return None
    return IgnoreLayer(base=base, spec=pathspec.GitIgnoreSpec.from_lines(lines), sources=sources)


class IgnoreFilter:
    """Decides whether a path under a scan root is skipped.

    One layer per directory that carries ignore files: the repo root and the
    scan root when they differ, plus every directory below the scan root that
    the walker descends into (see `descend`). Inside a layer the later rule
    wins, so a .lotarignore rule overrides a .gitignore rule for the same
    path, including `!pattern` re-includes. A path is ignored when any layer
    ignores it.
    """

    def __init__(self, root: Path, layers: Optional[List[IgnoreLayer]] = None):
        self.root = root
        self.layers = layers or []

    @classmethod
    def for_root(
        cls,
        root: Path,
        *,
        repo: Optional[Path] = None,
        warnings: Optional[List[str]] = None,
        extra_patterns: Sequence[str] = (),
    ) -> "IgnoreFilter":
        sink = warnings if warnings is not None else []
        root = root.resolve()
        bases: List[Path] = []
        if repo is not None:
            repo = repo.resolve()
            if repo != root and repo in root.parents:
                bases.append(repo)
        bases.append(root)
        layers: List[IgnoreLayer] = []
        for idx, base in enumerate(bases):
            extra = extra_patterns if idx == len(bases) - 1 else ()
            layer = build_layer(base, sink, extra)
            if layer is not None:
                layers.append(layer)
        return cls(root, layers)

    def descend(self, directory: Path, warnings: List[str]) -> "IgnoreFilter":
        """Filter for `directory`: this one plus the ignore files found there."""
        layer = build_layer(directory, warnings)
        if layer is None:
            return self
        return IgnoreFilter(self.root, [*self.layers, layer])

    @property
    def sources(self) -> List[str]:
        return [source for layer in self.layers for source in layer.sources]

    def is_ignored(self, path: Path, is_dir: bool = False) -> bool:
        if not self.layers:
            return False
        if not path.is_absolute():
            path = self.root / path
        return any(layer.matches(path, is_dir) for layer in self.layers)
