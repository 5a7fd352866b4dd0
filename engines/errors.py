"""Error taxonomy shared by the extraction engine and its stores."""

from __future__ import annotations

from typing import Optional


class ExtractionEngineError(RuntimeError):
    """Base class for every error raised by the extraction engine."""


class MalformedPatternError(ExtractionEngineError):
    """A pattern's rule body cannot be compiled or evaluated.

    Non-fatal during matching: the pattern is treated as producing no
    matches and the condition is reported as a warning.
    """

    def __init__(self, pattern_id: Optional[str], message: str) -> None:
        self.pattern_id = pattern_id
        super().__init__(f"Pattern {pattern_id or '<new>'} is malformed: {message}")


class NormalizationError(ExtractionEngineError, ValueError):
    """A raw match could not be converted to its declared value type."""

    def __init__(self, value_type: str, raw_value: str, reason: str = "") -> None:
        self.value_type = value_type
        self.raw_value = raw_value
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Cannot normalise {raw_value!r} as {value_type}{detail}")


class StoreUnavailableError(ExtractionEngineError):
    """The pattern store cannot be read or written."""


class ConcurrentUpdateConflict(ExtractionEngineError):
    """A statistics update kept losing races after the bounded retries."""

    def __init__(self, pattern_id: str, attempts: int) -> None:
        self.pattern_id = pattern_id
        self.attempts = attempts
        super().__init__(
            f"Statistics update for pattern {pattern_id} failed after {attempts} attempts"
        )


class PatternNotFoundError(ExtractionEngineError, LookupError):
    """No pattern exists for the requested id."""

    def __init__(self, pattern_id: str) -> None:
        self.pattern_id = pattern_id
        super().__init__(f"Pattern {pattern_id} not found")


__all__ = [
    "ConcurrentUpdateConflict",
    "ExtractionEngineError",
    "MalformedPatternError",
    "NormalizationError",
    "PatternNotFoundError",
    "StoreUnavailableError",
]
