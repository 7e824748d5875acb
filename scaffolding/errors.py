"""Exception hierarchy for the scaffolding generator.

Every failure of a build invocation surfaces as one of these classes.  None
of them are retried internally; the caller decides whether to run the whole
build again on the next trigger.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class ScaffoldError(Exception):
    """Base exception for the scaffolding generator."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class MalformedDomainError(ScaffoldError):
    """The domain model source could not be turned into a ``DomainInfo``."""

    def __init__(self, reason: str, path: str | Path | None = None):
        self.reason = reason
        self.path = str(path) if path is not None else None
        details: dict[str, Any] = {"reason": reason}
        if self.path:
            details["path"] = self.path
            message = f"Malformed domain model {self.path}: {reason}"
        else:
            message = f"Malformed domain model: {reason}"
        super().__init__(message, details)

    def with_path(self, path: str | Path) -> "MalformedDomainError":
        """Return a copy of this error attributed to *path*."""
        return MalformedDomainError(self.reason, path)


class TemplateResolutionError(ScaffoldError):
    """A brick reference could not be fetched, read or rendered."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(
            f"Cannot resolve brick '{reference}': {reason}",
            {"reference": reference, "reason": reason},
        )


class BundlingError(ScaffoldError):
    """Generated files violated an invariant the bundler relies on."""

    pass


class WriteError(ScaffoldError):
    """The bundled artifact could not be written."""

    def __init__(self, path: str | Path, reason: str):
        self.path = str(path)
        super().__init__(
            f"Cannot write {self.path}: {reason}",
            {"path": self.path, "reason": reason},
        )


class BuildCancelled(ScaffoldError):
    """The invocation was cancelled or superseded between two steps."""

    def __init__(self, path: str | Path, step: str):
        self.path = str(path)
        self.step = step
        super().__init__(
            f"Build of {self.path} cancelled before {step}",
            {"path": self.path, "step": step},
        )
