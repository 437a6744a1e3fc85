from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Set

from utils import ToolState, run_cmd


def find_repo_root(start: Path) -> Optional[Path]:
    current = start.resolve()
    if current.is_file():
        current = current.parent
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _unquote(path: str) -> str:
    path = path.strip()
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        # C-style escapes with octal UTF-8 bytes, e.g. "caf\303\251.py".
        raw = path[1:-1].encode("utf-8").decode("unicode_escape")
        return raw.encode("latin-1").decode("utf-8", errors="replace")
    return path


def parse_porcelain_renames(text: str) -> Dict[str, str]:
    """Map old -> new paths from `git status --porcelain` (v1) output.

    Only entries whose two-letter status contains `R` count; copies and
    ordinary modifications are ignored.
    """
    renames: Dict[str, str] = {}
    for line in text.splitlines():
        if len(line) < 4:
            continue
        status = line[:2]
        if "R" not in status:
            continue
        body = line[3:]
        old, sep, new = body.partition(" -> ")
        if not sep:
            continue
        old_path = _unquote(old)
        new_path = _unquote(new)
        if old_path and new_path:
            renames[old_path] = new_path
    return renames


def parse_porcelain_paths(text: str) -> Set[str]:
    """Every current path named by porcelain output (rename targets, not sources)."""
    paths: Set[str] = set()
    for line in text.splitlines():
        if len(line) < 4:
            continue
        status = line[:2]
        if status == "!!" or "D" in status:
            continue
        body = line[3:]
        _, sep, new = body.partition(" -> ")
        path = _unquote(new if sep else body)
        if path:
            paths.add(path)
    return paths


def porcelain_status(repo: Path, *, warnings: List[str], tools: ToolState) -> Optional[str]:
    result = run_cmd(
        ["git", "-C", str(repo), "status", "--porcelain", "--untracked-files=all"],
        cwd=repo,
        warnings=warnings,
        tools=tools,
    )
    if not result:
        return None
    if result.returncode != 0:
        detail = (result.stderr or "").strip().splitlines()
        warnings.append(f"git status failed: {detail[0] if detail else result.returncode}")
        return None
    return result.stdout


def rename_map(repo: Optional[Path], *, warnings: List[str], tools: ToolState) -> Dict[str, str]:
    """Renames in the working tree, repo-relative. Empty outside a git repo."""
    if repo is None:
        return {}
    output = porcelain_status(repo, warnings=warnings, tools=tools)
    if output is None:
        return {}
    return parse_porcelain_renames(output)


def status_paths(repo: Optional[Path], *, warnings: List[str], tools: ToolState) -> Optional[Set[Path]]:
    """Absolute paths of changed or untracked files; None when git has no answer."""
    if repo is None:
        warnings.append("Modified-only scan needs a git repository; scanning everything")
        return None
    output = porcelain_status(repo, warnings=warnings, tools=tools)
    if output is None:
        return None
    root = repo.resolve()
    return {(root / path).resolve() for path in parse_porcelain_paths(output)}
