from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from _fs import write_text_atomic


STORE_VERSION = 1
_LINE_SUFFIX_RE = re.compile(r"#L?(\d+)(?:[-:#].*)?$")


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def normalize_path(path: Path, repo: Path) -> str:
    resolved = path.resolve()
    try:
        return resolved.relative_to(repo.resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()


@dataclass(frozen=True)
class CodeAnchor:
    file_path: str
    line_number: int

    kind = "code"

    def to_ref(self) -> Dict[str, str]:
        return {"code": code_ref(self.file_path, self.line_number)}

    def moved_to(self, line_number: int) -> "CodeAnchor":
        return CodeAnchor(self.file_path, line_number)

    def renamed_to(self, file_path: str) -> "CodeAnchor":
        return CodeAnchor(file_path, self.line_number)


def code_ref(path: str, line: int) -> str:
    return f"{path}#L{line}"


def parse_code_ref(code: str) -> Tuple[str, Optional[int]]:
    match = _LINE_SUFFIX_RE.search(code)
    if not match:
        return code, None
    return code[: match.start()], int(match.group(1))


def anchor_from_ref(ref: Any) -> Optional[CodeAnchor]:
    if not isinstance(ref, dict):
        return None
    code = ref.get("code")
    if not isinstance(code, str) or not code.strip():
        return None
    path, line = parse_code_ref(code.strip())
    if not path or line is None or line < 1:
        return None
    return CodeAnchor(path, line)


def new_store(project: str) -> Dict[str, Any]:
    return {
        "meta": {
            "version": STORE_VERSION,
            "project": project,
            "next_id": 1,
            "updated_at": now_iso(),
        },
        "tasks": {},
    }


def load_store(path: Path) -> Dict[str, Any] | None:
    if not path.exists():
        return None
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), dict):
        raise ValueError(f"{path} is not a task store")
    return payload


def save_store(path: Path, store: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    store.setdefault("meta", {})["updated_at"] = now_iso()
    write_text_atomic(path, json.dumps(store, ensure_ascii=True, indent=2) + "\n")
