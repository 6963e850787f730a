"""Exception taxonomy.

Every failure a narrative run can hit maps onto one of these classes, and the
executor maps the class onto a FailureReason on the execution record:

  InputError: resolution, rendering, budget, platform command
    UnresolvedReferenceError: template reference with nothing behind it
  SecurityDeniedError: the security gate refused an action
  BackendError: generation backend failure (kind + recoverable)
  ExtractionError: no JSON / malformed JSON / schema mismatch
  PersistenceError: storage failure
    CircuitOpenError: storage breaker is open, call not attempted
  RegistryError: duplicate or unknown processor/platform name
  ConfigError: invalid configuration or narrative file
"""

from __future__ import annotations

from enum import Enum


class StoryloomError(Exception):
    """Base class for all storyloom errors."""


# ---------------------------------------------------------------------------
# Input resolution
# ---------------------------------------------------------------------------

class InputError(StoryloomError):
    """Raised when an act input cannot be turned into backend-ready content."""


class RenderError(InputError):
    """Raised when table rows or a template cannot be rendered in full."""


class BudgetTooSmallError(InputError):
    """Raised when max_tokens leaves no room relative to the resolved input size."""

    def __init__(self, act: str, max_tokens: int, input_tokens: int, min_ratio: float) -> None:
        self.act = act
        self.max_tokens = max_tokens
        self.input_tokens = input_tokens
        self.min_ratio = min_ratio
        super().__init__(
            f"Act {act!r}: max_tokens={max_tokens} is below {min_ratio:g} x "
            f"~{input_tokens} input tokens"
        )


class InputNotFoundError(InputError):
    """Raised when a referenced file or table does not exist."""


class PlatformCommandError(InputError):
    """Raised when a platform command fails or its platform is unknown."""


class UnresolvedReferenceError(InputError):
    """Raised when a template reference points at nothing."""

    def __init__(self, reference: str, detail: str = "") -> None:
        self.reference = reference
        msg = f"Unresolved reference {reference!r}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class SecurityDeniedError(StoryloomError):
    """Raised when the security gate denies an action."""

    def __init__(self, actor: str, action: str, reason: str) -> None:
        self.actor = actor
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor!r} denied {action!r}: {reason}")


# ---------------------------------------------------------------------------
# Generation backend
# ---------------------------------------------------------------------------

class BackendErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    NETWORK = "network"
    TIMEOUT = "timeout"
    INVALID = "invalid"


_RECOVERABLE = {BackendErrorKind.RATE_LIMITED, BackendErrorKind.NETWORK, BackendErrorKind.TIMEOUT}


class BackendError(StoryloomError):
    """Raised when the generation backend cannot produce a response."""

    def __init__(self, kind: BackendErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)

    @property
    def recoverable(self) -> bool:
        return self.kind in _RECOVERABLE


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    SCHEMA_MISMATCH = "schema_mismatch"


class ExtractionError(StoryloomError):
    """Raised when structured rows cannot be extracted from a response."""

    def __init__(self, kind: ExtractionErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class PersistenceError(StoryloomError):
    """Raised when storage cannot read or write a record."""


class CircuitOpenError(PersistenceError):
    """Raised instead of touching storage while the persistence breaker is open."""


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

class RegistryError(StoryloomError):
    """Raised on duplicate registration or lookup of an unknown name."""


class ConfigError(StoryloomError):
    """Raised when a config or narrative file is invalid."""
