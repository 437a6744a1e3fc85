"""Task API used by the scanner, plus a JSON-backed reference store.

The scanner only needs four things from task storage: mint a task, check a key,
and add or remove a code anchor on a task's `references`. Anything richer
belongs to the task manager that owns the store.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from refs import CodeAnchor, anchor_from_ref, code_ref, load_store, new_store, now_iso, save_store


class TaskStoreError(Exception):
    pass


class TaskNotFoundError(TaskStoreError):
    def __init__(self, key: str):
        super().__init__(f"Task not found: {key}")
        self.key = key


class TaskApi(Protocol):
    def create_task(self, seed: Dict[str, Any]) -> str: ...

    def task_exists(self, key: str) -> bool: ...

    def append_code_anchor(self, key: str, file_path: str, line: int) -> None: ...

    def remove_code_anchor(self, key: str, file_path: str, line: int) -> bool: ...

    def code_anchors(self, key: str) -> List[CodeAnchor]: ...

    def anchored_tasks(self) -> List[str]: ...


class KeyedLocks:
    """One lock per task key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield


class TaskStore:
    """Single JSON document of tasks; in memory only when `path` is None."""

    def __init__(self, path: Optional[Path], project: str):
        self.path = path
        self.project = project
        self._lock = threading.Lock()
        loaded = None
        if path is not None:
            try:
                loaded = load_store(path)
            except (OSError, ValueError) as exc:
                raise TaskStoreError(f"Failed to load {path}: {exc}") from exc
        self.store: Dict[str, Any] = loaded or new_store(project)

    @property
    def tasks(self) -> Dict[str, Dict[str, Any]]:
        return self.store["tasks"]

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            save_store(self.path, self.store)
        except OSError as exc:
            raise TaskStoreError(f"Failed to write {self.path}: {exc}") from exc

    def _next_key(self) -> str:
        meta = self.store.setdefault("meta", {})
        next_id = int(meta.get("next_id", 1))
        while f"{self.project}-{next_id}" in self.tasks:
            next_id += 1
        meta["next_id"] = next_id + 1
        return f"{self.project}-{next_id}"

    def create_task(self, seed: Dict[str, Any]) -> str:
        with self._lock:
            key = self._next_key()
            stamp = now_iso()
            task = {"key": key, "status": "todo", "created": stamp, "modified": stamp, "references": []}
            task.update({name: value for name, value in seed.items() if value not in (None, "", [], {})})
            self.tasks[key] = task
            try:
                self._save()
            except TaskStoreError:
                del self.tasks[key]
                raise
            return key

    def put_task(self, key: str, **fields: Any) -> Dict[str, Any]:
        with self._lock:
            stamp = now_iso()
            task = {"key": key, "status": "todo", "created": stamp, "modified": stamp, "references": []}
            task.update(fields)
            self.tasks[key] = task
            self._save()
            return task

    def delete_task(self, key: str) -> bool:
        with self._lock:
            if self.tasks.pop(key, None) is None:
                return False
            self._save()
            return True

    def task_exists(self, key: str) -> bool:
        with self._lock:
            return key in self.tasks

    def get_task(self, key: str) -> Dict[str, Any]:
        with self._lock:
            task = self.tasks.get(key)
            if task is None:
                raise TaskNotFoundError(key)
            return dict(task)

    def append_code_anchor(self, key: str, file_path: str, line: int) -> None:
        ref = code_ref(file_path, line)
        with self._lock:
            task = self.tasks.get(key)
            if task is None:
                raise TaskNotFoundError(key)
            references = task.setdefault("references", [])
            if any(isinstance(item, dict) and item.get("code") == ref for item in references):
                return
            references.append({"code": ref})
            task["modified"] = now_iso()
            self._save()

    def remove_code_anchor(self, key: str, file_path: str, line: int) -> bool:
        target = CodeAnchor(file_path, line)
        with self._lock:
            task = self.tasks.get(key)
            if task is None:
                return False
            references = task.get("references") or []
            kept = [item for item in references if anchor_from_ref(item) != target]
            if len(kept) == len(references):
                return False
            task["references"] = kept
            task["modified"] = now_iso()
            self._save()
            return True

    def code_anchors(self, key: str) -> List[CodeAnchor]:
        with self._lock:
            task = self.tasks.get(key)
            if task is None:
                return []
            anchors = (anchor_from_ref(item) for item in task.get("references") or [])
            return [anchor for anchor in anchors if anchor is not None]

    def anchored_tasks(self) -> List[str]:
        with self._lock:
            return sorted(
                key
                for key, task in self.tasks.items()
                if any(anchor_from_ref(item) for item in task.get("references") or [])
            )
