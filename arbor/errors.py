# arbor/errors.py
"""
Arbor error taxonomy.

Fatal errors (configuration, integrity) propagate as exceptions. Per-edge and
per-node problems are recorded on the graph instead and only raise when a
strict option asks for it.
"""

from __future__ import annotations
from typing import Any, Dict


class ArborError(Exception):
    code = "EARBOR"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class NotFoundError(ArborError):
    """No ancestor (or registry) provides the requested name."""
    code = "ENOTFOUND"


class UnsatisfiableError(ArborError):
    """No version of a package satisfies the requested specifier."""
    code = "ETARGET"


class ConflictError(ArborError):
    """Placement cannot satisfy every dependent at any level."""
    code = "ERESOLVE"


class PeerViolationError(ConflictError):
    code = "ERESOLVE"


class EngineError(ArborError):
    code = "EBADENGINE"


class IntegrityMismatchError(ArborError):
    code = "EINTEGRITY"


class FilesystemConflictError(ArborError):
    code = "EEXIST"


class ConfigInvalidError(ArborError):
    code = "ECONFIG"


class OverrideConflictError(ConfigInvalidError):
    code = "EOVERRIDE"


class FetchError(ArborError):
    code = "EFETCH"
    retryable = False


class FetchTimeoutError(FetchError):
    code = "ETIMEDOUT"
    retryable = True


class ReifyAbortedError(ArborError):
    code = "EABORT"


class LifecycleScriptError(ArborError):
    code = "ELIFECYCLE"


class QuerySyntaxError(ArborError):
    """A dependency selector that cannot be parsed."""
    code = "EQUERY"


class ManifestNotFoundError(NotFoundError):
    """A package folder without a readable package.json."""
    code = "ENOENT"


class ManifestParseError(ArborError):
    code = "EJSONPARSE"
