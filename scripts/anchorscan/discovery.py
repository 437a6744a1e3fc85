from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set

from utils import ToolState

from .constants import EXCLUDE_DIRS
from .git import status_paths
from .grammars import normalize_extension
from .ignore import IgnoreFilter


NOISE_FILE_NAMES = {
    ".coverage",
    ".dmypy.json",
    ".pnp.cjs",
    ".pnp.js",
    "coverage.xml",
    "next-env.d.ts",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
}
NOISE_FILE_SUFFIXES = (
    ".min.js",
    ".min.css",
    ".map",
    ".pyc",
    ".pyd",
    ".pyo",
    ".so",
    ".tsbuildinfo",
)


def is_generated_noise_file(path: str) -> bool:
    lower = path.lower()
    name = Path(path).name.lower()
    if name in NOISE_FILE_NAMES:
        return True
    if any(lower.endswith(suffix) for suffix in NOISE_FILE_SUFFIXES):
        return True
    if ".egg-info/" in lower:
        return True
    return False


def extension_key(path: Path) -> str:
    if path.suffix:
        return normalize_extension(path.suffix)
    return path.name.lower()


def filter_by_extension(path: Path, include: Sequence[str], exclude: Sequence[str]) -> bool:
    key = extension_key(path)
    if exclude and key in {normalize_extension(ext) for ext in exclude}:
        return False
    if include:
        return key in {normalize_extension(ext) for ext in include}
    return True


def modified_files(repo: Optional[Path], warnings: List[str], tools: ToolState) -> Optional[Set[Path]]:
    return status_paths(repo, warnings=warnings, tools=tools)


def walk(
    roots: Iterable[Path],
    *,
    warnings: List[str],
    repo: Optional[Path] = None,
    ignore_filters: Optional[Dict[Path, IgnoreFilter]] = None,
    include_ext: Sequence[str] = (),
    exclude_ext: Sequence[str] = (),
    only: Optional[Set[Path]] = None,
) -> Iterator[Path]:
    """Yield candidate files under each root, lazily and in sorted order.

    Ignored directories are pruned before descent, and ignore files found in a
    directory apply to everything below it. Symlinks are followed, but
    every real directory and real file is visited at most once per call, which
    keeps symlink cycles finite. Unreadable directories become warnings.
    """
    filters = ignore_filters if ignore_filters is not None else {}
    seen_dirs: Set[str] = set()
    seen_files: Set[str] = set()

    def on_error(exc: OSError) -> None:
        warnings.append(f"Skipped {exc.filename}: {exc.strerror or exc}")

    def accept(full: Path, ignore: IgnoreFilter) -> bool:
        if is_generated_noise_file(full.as_posix()):
            return False
        if not filter_by_extension(full, include_ext, exclude_ext):
            return False
        if ignore.is_ignored(full):
            return False
        if only is not None and full.resolve() not in only:
            return False
        real = os.path.realpath(full)
        if real in seen_files:
            return False
        seen_files.add(real)
        return True

    for raw_root in roots:
        root = Path(raw_root).resolve()
        ignore = filters.get(root)
        if ignore is None:
            ignore = IgnoreFilter.for_root(
                root if root.is_dir() else root.parent, repo=repo, warnings=warnings
            )
            filters[root] = ignore
        if root.is_file():
            if accept(root, ignore):
                yield root
            continue
        # Filters for directories still to be visited, with their own ignore files applied.
        dir_filters: Dict[str, IgnoreFilter] = {}
        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error, followlinks=True):
            current = Path(dirpath)
            here = dir_filters.pop(dirpath, ignore)
            real_dir = os.path.realpath(dirpath)
            if real_dir in seen_dirs:
                dirnames[:] = []
                continue
            seen_dirs.add(real_dir)
            dirnames[:] = sorted(
                name
                for name in dirnames
                if name not in EXCLUDE_DIRS and not here.is_ignored(current / name, is_dir=True)
            )
            for name in dirnames:
                dir_filters[os.path.join(dirpath, name)] = here.descend(current / name, warnings)
            for filename in sorted(filenames):
                full = current / filename
                if not full.is_file():
                    continue
                if accept(full, here):
                    yield full
