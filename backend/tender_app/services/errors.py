"""
Error taxonomy for the taking-off core.

Routes translate these into HTTP responses (400 / 409 / 404). Hierarchy
fallback matching is not an error: it is reported through
``ResolutionAmbiguity`` on the resolver result.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class TakingOffError(Exception):
    """Base class. Carries a human message plus structured context."""

    status_code: int = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": type(self).__name__, **self.context}


class ValidationError(TakingOffError):
    """Malformed or out-of-range input. Never retried automatically."""

    status_code = 400


class ConflictError(TakingOffError):
    """Duplicate rule path within a section."""

    status_code = 409


class NotFoundError(TakingOffError):
    """Row / item / rule no longer exists."""

    status_code = 404


@dataclass
class ResolutionAmbiguity:
    """Soft signal: the resolver had to fall back to a less certain strategy."""
    strategy: str
    parent_path: str
    notes: List[str] = field(default_factory=list)
    parent_found: bool = True
    expected_level: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "parent_path": self.parent_path,
            "parent_found": self.parent_found,
            "expected_level": self.expected_level,
            "notes": list(self.notes),
        }
