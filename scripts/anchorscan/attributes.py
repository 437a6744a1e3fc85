"""Inline `[key=value]` attribute blocks inside marker comments."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Tuple

RESERVED_KEYS = {"ticket"}
_TICKET_ATTR_RE = re.compile(r"\[\s*ticket\s*=\s*([^\]\s,]+)\s*\]", re.IGNORECASE)


def bracket_blocks(text: str) -> List[Tuple[int, int, str]]:
    """Top-level `[...]` blocks as (start, end, inner) with end exclusive."""
    blocks: List[Tuple[int, int, str]] = []
    depth = 0
    start = -1
    for idx, ch in enumerate(text):
        if ch == "[":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "]" and depth > 0:
            depth -= 1
            if depth == 0:
                blocks.append((start, idx + 1, text[start + 1 : idx]))
    return blocks


def parse_inline_attributes(text: str) -> Dict[str, str]:
    """Parse `[key=value, key2=value2]` blocks; keys are lowercased.

    A key given more than once keeps every value, comma joined. Bare tokens
    without `=` are skipped, and `ticket` is left to key detection.
    """
    attrs: Dict[str, str] = {}
    for _, _, inner in bracket_blocks(text):
        if "=" not in inner:
            continue
        for part in inner.split(","):
            key, sep, value = part.partition("=")
            key = key.strip().lower()
            value = value.strip()
            if not sep or not key or key in RESERVED_KEYS:
                continue
            if key in attrs:
                attrs[key] = f"{attrs[key]},{value}"
            else:
                attrs[key] = value
    return attrs


def strip_bracket_attributes(text: str) -> str:
    """Drop `[...]` blocks that contain `=`; every other character stays put.

    Blocks without `=` (indexers, generics, links) are kept as written, and an
    unbalanced trailing `[` is written back literally.
    """
    out: List[str] = []
    cursor = 0
    for start, end, inner in bracket_blocks(text):
        if "=" not in inner:
            continue
        out.append(text[cursor:start])
        cursor = end
    out.append(text[cursor:])
    return "".join(out)


def ticket_attribute(text: str) -> re.Match[str] | None:
    return _TICKET_ATTR_RE.search(text)


def split_tags(value: str) -> List[str]:
    return [tag for tag in re.split(r"[,\s]+", value) if tag]


def seed_fields(title: str, attrs: Dict[str, str]) -> Dict[str, Any]:
    """Map parsed attributes onto task-creation hints."""
    seed: Dict[str, Any] = {"title": title}
    tags: List[str] = []
    custom: Dict[str, str] = {}
    for key, value in attrs.items():
        if key in {"assignee", "assign"}:
            seed["assignee"] = value
        elif key == "priority":
            seed["priority"] = value
        elif key == "type":
            seed["task_type"] = value
        elif key == "effort":
            seed["effort"] = value
        elif key in {"due", "due_date"}:
            seed["due_date"] = value
        elif key in {"tag", "tags"}:
            tags.extend(split_tags(value))
        else:
            custom[key] = value
    if tags:
        seed["tags"] = tags
    if custom:
        seed["custom_fields"] = custom
    return seed
