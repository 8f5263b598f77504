"""User-facing prompts emitted by the auto-fix loop and the commit gate."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable


class PromptKind(str, Enum):
    TESTS_FAILED = "tests-failed"
    AUTOFIX_HALTED = "autofix-halted"
    AUTOFIX_ERROR = "autofix-error"
    CONTINUE_TO_COMMIT = "continue-to-commit"
    CONTINUE_TO_COMMITS_VIEW = "continue-to-commits-view"
    COMMIT_BLOCKED = "commit-blocked"
    COMMITTED = "committed"


@dataclass(frozen=True, slots=True)
class Prompt:
    """A message for the user, optionally with a confirm action."""

    kind: PromptKind
    title: str
    message: str
    variant: str = "default"
    confirm_text: str | None = None
    cancel_text: str | None = None
    project_id: str | None = None
    on_confirm: Callable[[], Awaitable[Any]] | None = field(default=None, compare=False)
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "variant": self.variant,
            "confirmText": self.confirm_text,
            "cancelText": self.cancel_text,
            "projectId": self.project_id,
            "metadata": dict(self.metadata),
        }


PromptSink = Callable[[Prompt], Any]


__all__ = ["Prompt", "PromptKind", "PromptSink"]
