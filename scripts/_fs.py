"""Filesystem helpers for source files.

Rules:
- never rewrite a file in place; write a sibling temp file and swap it in
- writes through a symlink land on its target and leave the link alone
- a file with a NUL byte in its head, or that is not UTF-8, is not text
"""
from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Tuple

BINARY_SNIFF_BYTES = 8192


class NotTextError(ValueError):
    pass


def looks_binary(data: bytes) -> bool:
    return b"\x00" in data[:BINARY_SNIFF_BYTES]


def read_source_text(path: Path) -> str:
    data = path.read_bytes()
    if looks_binary(data):
        raise NotTextError(f"{path} looks binary")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise NotTextError(f"{path} is not UTF-8 text: {exc.reason}") from exc


def split_lines(text: str) -> List[Tuple[str, str]]:
    """Split into (content, ending) pairs; endings are "\\n", "\\r\\n" or ""."""
    pairs: List[Tuple[str, str]] = []
    start = 0
    length = len(text)
    while start < length:
        idx = text.find("\n", start)
        if idx == -1:
            pairs.append((text[start:], ""))
            break
        if idx > start and text[idx - 1] == "\r":
            pairs.append((text[start : idx - 1], "\r\n"))
        else:
            pairs.append((text[start:idx], "\n"))
        start = idx + 1
    return pairs


def join_lines(pairs: List[Tuple[str, str]]) -> str:
    return "".join(content + ending for content, ending in pairs)


def write_text_atomic(path: Path, text: str) -> None:
    # Swap in the symlink target; replacing the link itself would detach it.
    path = Path(os.path.realpath(path))
    data = text.encode("utf-8")
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def safe_preview_text(text: str, max_bytes: int = 512) -> str:
    data = text.encode("utf-8", errors="replace")
    if len(data) <= max_bytes:
        return text
    cut = data[:max_bytes]
    return cut.decode("utf-8", errors="ignore") + "..."
