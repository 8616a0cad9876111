from __future__ import annotations

from enum import Enum
from typing import Sequence


class SkillsyncError(RuntimeError):
    pass


class ParseError(SkillsyncError):
    pass


class ValidationError(SkillsyncError):
    pass


class ResolutionKind(str, Enum):
    NOT_FOUND = "not-found"
    AMBIGUOUS_NAME = "ambiguous-name"
    CYCLE = "cycle"
    CONFLICT = "conflict"


class ResolutionError(SkillsyncError):
    def __init__(self, kind: ResolutionKind, message: str, *, path: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.kind = kind
        self.path = tuple(path)


class IntegrityError(SkillsyncError):
    pass


class FetchKind(str, Enum):
    NOT_FOUND = "not-found"
    NETWORK = "network"
    AUTH = "auth"


class FetchError(SkillsyncError):
    def __init__(self, kind: FetchKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class InstallError(SkillsyncError):
    pass


class CancelledError(SkillsyncError):
    pass
