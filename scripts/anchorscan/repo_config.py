from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .constants import (
    CONFIG_FILES,
    DEFAULT_INSERTION_FORMAT,
    DEFAULT_ISSUE_TYPES,
    DEFAULT_PROJECT,
    DEFAULT_SEARCH_RADIUS,
    DEFAULT_SIGNAL_WORDS,
    DEFAULT_TICKET_PATTERN,
)


class ScanConfigError(ValueError):
    """Scan settings that would make a session produce wrong results."""


@dataclass
class ScanConfig:
    signal_words: List[str] = field(default_factory=lambda: list(DEFAULT_SIGNAL_WORDS))
    ticket_patterns: List[str] = field(default_factory=lambda: [DEFAULT_TICKET_PATTERN])
    enable_ticket_words: bool = False
    issue_types: List[str] = field(default_factory=lambda: list(DEFAULT_ISSUE_TYPES))
    enable_mentions: bool = True
    strip_attributes: bool = True
    insertion_format: str = DEFAULT_INSERTION_FORMAT
    search_radius: int = DEFAULT_SEARCH_RADIUS
    project: str = DEFAULT_PROJECT
    source: Optional[str] = None

    def effective_signal_words(self) -> List[str]:
        words = list(self.signal_words)
        if self.enable_ticket_words:
            words.extend(word for word in self.issue_types if word not in words)
        return words

    def validate(self) -> List[Pattern[str]]:
        """Check every setting a session depends on; returns compiled ticket patterns."""
        if "{key}" not in self.insertion_format:
            raise ScanConfigError(f"insertion_format must contain {{key}}: {self.insertion_format!r}")
        if self.search_radius < 0:
            raise ScanConfigError(f"search_radius must be >= 0, got {self.search_radius}")
        if not any(word.strip() for word in self.effective_signal_words()):
            raise ScanConfigError("signal_words must name at least one word")
        return compile_ticket_patterns(self.ticket_patterns)


def compile_ticket_patterns(patterns: Sequence[str]) -> List[Pattern[str]]:
    compiled: List[Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ScanConfigError(f"Invalid ticket pattern {pattern!r}: {exc}") from exc
    if not compiled:
        raise ScanConfigError("ticket_patterns must contain at least one pattern")
    return compiled


def project_from_name(name: str) -> str:
    letters = re.sub(r"[^A-Za-z0-9]", "", name).upper()[:8]
    if not letters or not letters[0].isalpha():
        return DEFAULT_PROJECT
    return letters


def normalize_str_list(value: Any) -> List[str]:
    if isinstance(value, str) and value.strip():
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return []


def _scan_section(payload: Dict[str, Any]) -> Dict[str, Any]:
    section: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(key, str) and key.startswith("scan_"):
            section[key[len("scan_") :]] = value
    nested = payload.get("scan")
    if isinstance(nested, dict):
        section.update(nested)
    return section


def load_repo_config(repo: Path, warnings: List[str]) -> Tuple[Dict[str, Any], Optional[str]]:
    for filename in CONFIG_FILES:
        path = repo / filename
        if not path.exists():
            continue
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            warnings.append(f"Failed to parse {filename}: {exc}")
            return {}, filename
        if not isinstance(payload, dict):
            warnings.append(f"Invalid {filename}: expected a JSON object")
            return {}, filename
        return payload, filename
    return {}, None


def load_scan_config(repo: Path, warnings: List[str]) -> ScanConfig:
    payload, source = load_repo_config(repo, warnings)
    section = _scan_section(payload)
    config = ScanConfig(source=source)

    signal_words = normalize_str_list(section.get("signal_words"))
    if signal_words:
        config.signal_words = signal_words
    if "ticket_patterns" in section:
        patterns = section["ticket_patterns"]
        if isinstance(patterns, str):
            patterns = [patterns]
        if isinstance(patterns, list) and all(isinstance(item, str) for item in patterns):
            config.ticket_patterns = list(patterns)
        else:
            raise ScanConfigError("ticket_patterns must be a string or a list of strings")
    issue_types = normalize_str_list(section.get("issue_types"))
    if issue_types:
        config.issue_types = issue_types

    for name in ("enable_ticket_words", "enable_mentions", "strip_attributes"):
        value = section.get(name)
        if value is None:
            continue
        if isinstance(value, bool):
            setattr(config, name, value)
        else:
            warnings.append(f"Ignored scan.{name}: expected true or false")

    insertion_format = section.get("insertion_format")
    if isinstance(insertion_format, str) and insertion_format:
        config.insertion_format = insertion_format
    radius = section.get("search_radius")
    if radius is not None:
        if isinstance(radius, int) and not isinstance(radius, bool):
            config.search_radius = radius
        else:
            warnings.append("Ignored scan.search_radius: expected an integer")

    project = section.get("project") or payload.get("default_project") or payload.get("project")
    if isinstance(project, str) and project.strip():
        config.project = project.strip().upper()
    else:
        config.project = project_from_name(repo.resolve().name)
    return config
