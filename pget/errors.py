"""Run-level failures, grouped by the stage of a fetch run that raised them."""

from __future__ import annotations

from typing import Optional

__all__ = [
    "PgetError",
    "ListError",
    "FetchError",
    "OutputPreconditionError",
    "MergeWriteError",
    "CleanupError",
]


class PgetError(RuntimeError):
    """Base exception for all fetch run failures."""

    stage = "run"


class ListError(PgetError):
    """Raised when the remote directory cannot be enumerated."""

    stage = "list"


class FetchError(PgetError):
    """Raised when a single entry fails to transfer."""

    stage = "fetch"

    def __init__(self, message: str, *, entry: Optional[str] = None, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.entry = entry
        self.index = index


class OutputPreconditionError(PgetError):
    """Raised when the output path is invalid for the selected mode."""

    stage = "precondition"


class MergeWriteError(PgetError):
    """Raised when assembling the merged output file fails."""

    stage = "merge"


class CleanupError(PgetError):
    """Raised when the scratch directory cannot be removed."""

    stage = "cleanup"
