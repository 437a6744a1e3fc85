#!/usr/bin/env python3
"""anchorscan CLI: scan source comments for TODO markers and keep task code anchors current."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from anchorscan import (
    ScanConfigError,
    ScanOptions,
    ScanResult,
    TaskStore,
    TaskStoreError,
    default_workers,
    load_scan_config,
    scan_repo,
)
from _fs import safe_preview_text
from utils import ToolState
from .config import apply_overrides, parse_ext_list, resolve_scan_roots, resolve_tasks_path

PREVIEW_BYTES = 160


def build_scan_text(result: ScanResult, *, max_sample: int) -> str:
    summary = result.summary
    lines: List[str] = []
    for name, value in summary.to_dict().items():
        lines.append(f"{name.upper()}: {value}")

    shown = [entry for entry in result.entries if entry.status != "skipped"]
    if shown:
        lines.append("ENTRIES:")
        for entry in shown[:max_sample]:
            key = entry.task_key or entry.existing_key or "-"
            line = f"  {entry.file}:{entry.line} {entry.status} {key}"
            if entry.updated_line is not None:
                line += f"  {safe_preview_text(entry.updated_line.strip(), PREVIEW_BYTES)}"
            if entry.message:
                line += f"  ({entry.message})"
            lines.append(line)
        if len(shown) > max_sample:
            lines.append(f"  ... {len(shown) - max_sample} more")

    changed = [check for check in result.anchor_checks if check.state.value != "confirmed" or check.pruned]
    if changed:
        lines.append("ANCHORS:")
        for check in changed[:max_sample]:
            line = f"  {check.key} {check.anchor.file_path}#L{check.anchor.line_number} {check.state.value}"
            if check.pruned:
                line += " pruned"
            elif check.new_anchor is not None and check.moved:
                line += f" -> {check.new_anchor.file_path}#L{check.new_anchor.line_number}"
            if check.message:
                line += f"  ({check.message})"
            lines.append(line)
        if len(changed) > max_sample:
            lines.append(f"  ... {len(changed) - max_sample} more")

    if result.warnings:
        lines.append("WARNINGS:")
        for warning in result.warnings[:max_sample]:
            lines.append(f"  {warning}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Source TODO scanner and code anchor tracker")
    parser.add_argument("--repo", default=".", help="Repo root (default: .)")
    parser.add_argument(
        "--tasks-file",
        default=None,
        help="Task store JSON (default: <repo>/.tasks/tasks.json)",
    )
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output on stderr")

    subparsers = parser.add_subparsers(dest="command")

    scan_parser = subparsers.add_parser("scan", help="Scan comments, create tasks and update anchors")
    scan_parser.add_argument("paths", nargs="*", help="Scan roots (default: repo root)")
    scan_parser.add_argument(
        "--create", action="store_true", help="Create tasks for markers without a key"
    )
    scan_parser.add_argument(
        "--reanchor",
        action="store_true",
        help="Keep only the most recently confirmed anchor per task, across files",
    )
    scan_parser.add_argument(
        "--dry-run", action="store_true", help="Report actions without writing files or tasks"
    )
    scan_parser.add_argument(
        "--include",
        action="append",
        default=None,
        help="Only scan these extensions (comma list, repeatable)",
    )
    scan_parser.add_argument(
        "--exclude",
        action="append",
        default=None,
        help="Skip these extensions (comma list, repeatable; wins over --include)",
    )
    scan_parser.add_argument(
        "--modified-only",
        action="store_true",
        help="Only scan files git reports as changed or untracked",
    )
    scan_parser.add_argument(
        "--strip-attributes",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Remove [key=value] blocks once absorbed, and stale keys (default: from config)",
    )
    scan_parser.add_argument(
        "--no-mentions",
        action="store_true",
        help="Do not anchor existing keys found in comments",
    )
    scan_parser.add_argument(
        "--radius", type=int, default=None, help="Nearby-window search radius in lines"
    )
    scan_parser.add_argument("--project", default=None, help="Project prefix for new task keys")
    scan_parser.add_argument(
        "--workers",
        type=int,
        default=default_workers(),
        help="Parallel file workers (default: CPU count capped at 8)",
    )
    scan_parser.add_argument("--format", choices=["json", "text"], default="text")
    scan_parser.add_argument("--max-sample", type=int, default=50, help="Text output cap per section")

    anchors_parser = subparsers.add_parser("anchors", help="List recorded code anchors")
    anchors_parser.add_argument("key", nargs="?", default=None, help="Task key (default: all tasks)")
    anchors_parser.add_argument("--format", choices=["json", "text"], default="text")
    return parser


def fail(message: str) -> int:
    print(json.dumps({"error": message}, ensure_ascii=True), file=sys.stderr)
    return 2


def run_scan(args: argparse.Namespace) -> int:
    repo = Path(args.repo).resolve()
    if not repo.is_dir():
        return fail(f"Repo not found: {repo}")
    warnings: List[str] = []
    try:
        config = apply_overrides(load_scan_config(repo, warnings), args)
        tasks = TaskStore(resolve_tasks_path(repo, args.tasks_file), config.project)
    except (ScanConfigError, TaskStoreError) as exc:
        return fail(str(exc))
    options = ScanOptions(
        repo=repo,
        roots=resolve_scan_roots(args.paths),
        create_tasks=args.create,
        reanchor=args.reanchor,
        dry_run=args.dry_run,
        include_ext=parse_ext_list(args.include),
        exclude_ext=parse_ext_list(args.exclude),
        modified_only=args.modified_only,
        workers=max(1, int(args.workers)),
        show_progress=not args.quiet,
    )
    try:
        result = scan_repo(options, config, tasks, tools=ToolState())
    except (ScanConfigError, ValueError) as exc:
        return fail(str(exc))
    result.warnings[:0] = warnings
    if args.format == "json":
        print(json.dumps(result.to_dict(), ensure_ascii=True, indent=2))
    else:
        print(build_scan_text(result, max_sample=max(1, args.max_sample)))
    return 0


def run_anchors(args: argparse.Namespace) -> int:
    repo = Path(args.repo).resolve()
    warnings: List[str] = []
    try:
        config = load_scan_config(repo, warnings)
        tasks = TaskStore(resolve_tasks_path(repo, args.tasks_file), config.project)
    except (ScanConfigError, TaskStoreError) as exc:
        return fail(str(exc))
    if args.key and not tasks.task_exists(args.key):
        return fail(f"Task not found: {args.key}")
    keys = [args.key] if args.key else tasks.anchored_tasks()
    listing: Dict[str, List[str]] = {
        key: [anchor.to_ref()["code"] for anchor in tasks.code_anchors(key)] for key in keys
    }
    if args.format == "json":
        print(json.dumps(listing, ensure_ascii=True, indent=2))
        return 0
    for key, refs in listing.items():
        print(f"{key}:")
        for ref in refs:
            print(f"  {ref}")
        if not refs:
            print("  (none)")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "scan":
        return run_scan(args)

    if args.command == "anchors":
        return run_anchors(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
