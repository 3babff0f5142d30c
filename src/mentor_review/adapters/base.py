from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class DraftRequest:
    assignment_title: str
    assignment_description: str
    input_snapshot: str
    policy_text: str | None = None


@dataclass(frozen=True)
class DraftResult:
    ok: bool
    payload: dict = field(default_factory=dict)
    error: str | None = None
    model: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def failure(cls, error: str, *, model: str | None = None, duration_seconds: float = 0.0) -> 'DraftResult':
        return cls(ok=False, error=error, model=model, duration_seconds=duration_seconds)


class DraftingError(RuntimeError):
    def __init__(self, message: str, *, reason: str = 'draft_failed'):
        super().__init__(message)
        self.reason = reason


class Drafter(Protocol):
    name: str

    def draft(self, request: DraftRequest) -> DraftResult:
        ...
