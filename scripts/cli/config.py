from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional, Sequence

from anchorscan import DEFAULT_TASKS_FILE, ScanConfig


def parse_ext_list(values: Optional[Sequence[str]]) -> List[str]:
    exts: List[str] = []
    for value in values or []:
        exts.extend(part.strip().lstrip(".").lower() for part in value.split(",") if part.strip())
    return exts


def resolve_tasks_path(repo: Path, tasks_arg: Optional[str]) -> Path:
    if tasks_arg:
        path = Path(tasks_arg)
        return path if path.is_absolute() else (Path.cwd() / path).resolve()
    return (repo / DEFAULT_TASKS_FILE).resolve()


def resolve_scan_roots(paths: Sequence[str]) -> List[Path]:
    return [Path(path).resolve() for path in paths]


def apply_overrides(config: ScanConfig, args: argparse.Namespace) -> ScanConfig:
    """Command-line flags win over the repo config file."""
    if getattr(args, "strip_attributes", None) is not None:
        config.strip_attributes = args.strip_attributes
    if getattr(args, "radius", None) is not None:
        config.search_radius = args.radius
    if getattr(args, "project", None):
        config.project = args.project.strip().upper()
    if getattr(args, "no_mentions", False):
        config.enable_mentions = False
    return config
