"""Domain-specific exceptions for webhook-runner.

Every failure inside the trust pipeline raises one of these so the HTTP
layer and the push router can map it to a precise status.  Never raise
bare Exception or use generic error types.
"""

from __future__ import annotations


# =============================================================================
# Webhook / Security
# =============================================================================


class HubSignatureError(Exception):
    """Base exception for ``X-Hub-Signature-256`` failures."""


class HubSignatureLengthError(HubSignatureError):
    """The header value is not exactly ``sha256=`` plus 64 hex characters long."""

    def __init__(self, length: int, intended: int) -> None:
        self.length = length
        self.intended = intended
        super().__init__(
            f"header value for signature was incorrect size: {length} != {intended}"
        )


class HubSignatureContentError(HubSignatureError):
    """The header value does not start with the ``sha256=`` prefix."""

    def __init__(self, header: str) -> None:
        self.header = header
        super().__init__(f"the http header was malformed: {header}")


class HubSignatureHexError(HubSignatureError):
    """The digest part of the header is not valid hexadecimal."""


class HmacVerificationError(HubSignatureError):
    """The HMAC computed over the body does not match the header."""


# =============================================================================
# Processing (git, gpgv, commands)
# =============================================================================


class ProcessingError(Exception):
    """Base exception for failures while handling a single push event."""


class ProcessTimeoutError(ProcessingError):
    """A subprocess exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"timeout expired after {timeout}s: {command}")


class CommandFailedError(ProcessingError):
    """A subprocess returned a nonzero exit code."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"process returned nonzero exit code: {exit_code}")


class GitOperationError(ProcessingError):
    """A git operation on the repository failed."""


class RepositoryIntegrityError(ProcessingError):
    """The checked-out object is not the commit that was requested."""

    def __init__(self, actual: str, expected: str) -> None:
        self.actual = actual
        self.expected = expected
        super().__init__(
            f"the ref we're on ({actual}) is not the ref we expect: ({expected})"
        )


class InvalidKeyringFileError(ProcessingError):
    """The keyring file could not be read at all."""


class MalformedSignatureError(ProcessingError):
    """The gpgsig header is missing or cannot be parsed as a signature."""


class InvalidSignatureError(ProcessingError):
    """The signature does not verify against the trusted certificates."""


# =============================================================================
# OpenPGP data
# =============================================================================


class MalformedPacketError(Exception):
    """gpg could not decode any OpenPGP data from the input."""
