from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .lines import KEY_FORM_ATTRIBUTE, KEY_FORM_PAREN, MarkerCandidate
from .tasks import TaskApi


class Action(str, Enum):
    CREATE_AND_ANCHOR = "create_and_anchor"
    CONFIRM_ANCHOR = "confirm_anchor"
    PRUNE_STALE_KEY = "prune_stale_key"
    IGNORE = "ignore"


@dataclass(frozen=True)
class ResolutionPolicy:
    create_tasks: bool = False
    enable_mentions: bool = True
    strip_attributes: bool = True


@dataclass(frozen=True)
class Resolution:
    action: Action
    key: Optional[str] = None
    reason: str = ""


def resolve(candidate: MarkerCandidate, tasks: TaskApi, policy: ResolutionPolicy) -> Resolution:
    """Decide what a marker candidate asks for.

    Depends only on the line and the task store, so an unchanged tree always
    resolves the same way. `TaskStoreError` from the lookup propagates.
    """
    key = candidate.existing_key
    if key is None:
        if candidate.is_mention:
            return Resolution(Action.IGNORE, reason="no key")
        if policy.create_tasks:
            return Resolution(Action.CREATE_AND_ANCHOR)
        return Resolution(Action.IGNORE, reason="task creation disabled")

    if tasks.task_exists(key):
        if policy.enable_mentions:
            return Resolution(Action.CONFIRM_ANCHOR, key=key)
        return Resolution(Action.IGNORE, key=key, reason="mentions disabled")

    # Only forms the scanner writes itself are removed; free-text keys stay.
    written_form = candidate.key_match is not None and candidate.key_match.form in (
        KEY_FORM_PAREN,
        KEY_FORM_ATTRIBUTE,
    )
    if not candidate.is_mention and written_form and policy.strip_attributes:
        return Resolution(Action.PRUNE_STALE_KEY, key=key)
    if not candidate.is_mention and not written_form and policy.create_tasks:
        # Leading text that merely looks like a key ("UTF-8 ...") is not one.
        return Resolution(Action.CREATE_AND_ANCHOR)
    return Resolution(Action.IGNORE, key=key, reason="unknown task")
