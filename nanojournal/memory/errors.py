"""Errors raised by the pattern memory system."""

from typing import Optional


class PatternMemoryError(Exception):
    """Base class for pattern memory errors."""
    pass


class DuplicateCanonicalHash(PatternMemoryError):
    """An active pattern with the same canonical hash and kind already exists."""

    def __init__(self, canonical_hash: str, existing_id: int):
        self.canonical_hash = canonical_hash
        self.existing_id = existing_id
        super().__init__(
            f"Active pattern {existing_id} already has canonical hash {canonical_hash[:12]}"
        )


class PatternNotFound(PatternMemoryError):
    """No pattern with this id (or no active one, for reinforcement)."""

    def __init__(self, pattern_id: int, reason: str = "does not exist"):
        self.pattern_id = pattern_id
        super().__init__(f"Pattern {pattern_id} {reason}")


class ExternalCallFailure(PatternMemoryError):
    """An extraction or embedding call failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
