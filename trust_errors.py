"""Error taxonomy shared by the trust-store tools.

Every raised error carries the process exit code the command line reports
for it, so the CLI can map failures without knowing their origin.
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EXIT_OK",
    "EXIT_PERMISSION",
    "EXIT_INVALID_ARGS",
    "EXIT_INVALID_STATE",
    "EXIT_FAILURE",
    "TrustError",
    "InputError",
    "NotACertificateError",
    "StructuralStateError",
    "DeploymentError",
    "TrustPermissionError",
    "ExtractionWarning",
]

EXIT_OK = 0
EXIT_PERMISSION = 1
EXIT_INVALID_ARGS = 22
EXIT_INVALID_STATE = 127
EXIT_FAILURE = 255


class TrustError(Exception):
    """Base class for all trust-store errors."""

    exit_code = EXIT_FAILURE

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.details = list(details or [])


class InputError(TrustError):
    """Bad arguments or missing input files. Nothing was mutated."""

    exit_code = EXIT_INVALID_ARGS


class NotACertificateError(InputError):
    """A file could not be read or parsed as an X.509 certificate."""

    def __init__(self, path, reason: str = "not a certificate"):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class StructuralStateError(TrustError):
    """Persisted state violates an invariant (e.g. distrusted is a file)."""

    exit_code = EXIT_INVALID_STATE


class DeploymentError(TrustError):
    """Staging, indexing or the swap failed. The deployed store is untouched."""

    exit_code = EXIT_FAILURE


class TrustPermissionError(TrustError):
    exit_code = EXIT_PERMISSION


@dataclass(frozen=True)
class ExtractionWarning:
    """A compat bundle could not be produced after a successful swap."""

    artifact: str
    message: str

    def __str__(self) -> str:
        return f"{self.artifact}: {self.message}"
