"""HMAC-SHA256 webhook signature verification.

Every incoming webhook is verified BEFORE any other processing when a
secret is configured.  Uses hmac.compare_digest() for constant-time
comparison to prevent timing attacks.

GitHub sends: X-Hub-Signature-256: sha256=<hex_digest>
We compute:   HMAC-SHA256(secret, raw_body)
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass

from webhook_runner.core.exceptions import (
    HmacVerificationError,
    HubSignatureContentError,
    HubSignatureHexError,
    HubSignatureLengthError,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
SIGNATURE_HEADER_LENGTH = len(SIGNATURE_PREFIX) + 64

_LOWER_HEX = frozenset("0123456789abcdef")


@dataclass(frozen=True)
class HubSignature256:
    """Decoded digest bytes from an ``X-Hub-Signature-256`` header."""

    digest: bytes

    @classmethod
    def parse(cls, value: str) -> HubSignature256:
        """Parse a header value of the form ``sha256=<64 hex chars>``.

        The checks run in a fixed order (length, prefix, hex) so exactly one
        error kind is reported for any malformed value.

        Raises:
            HubSignatureLengthError: The value is not 71 characters long.
            HubSignatureContentError: The value lacks the ``sha256=`` prefix.
            HubSignatureHexError: The digest is not hexadecimal.
        """
        if len(value) != SIGNATURE_HEADER_LENGTH:
            raise HubSignatureLengthError(len(value), SIGNATURE_HEADER_LENGTH)

        if not value.startswith(SIGNATURE_PREFIX):
            raise HubSignatureContentError(value)

        hex_digest = value[len(SIGNATURE_PREFIX):]
        invalid = set(hex_digest) - _LOWER_HEX
        if invalid:
            raise HubSignatureHexError(
                f"hex value was malformed: invalid characters {sorted(invalid)!r}"
            )

        return cls(binascii.unhexlify(hex_digest))

    def verify(self, secret: bytes, body: bytes) -> None:
        """Check that HMAC-SHA256(secret, body) equals the decoded digest.

        Raises:
            HmacVerificationError: If the digests differ.
        """
        expected = hmac.new(key=secret, msg=body, digestmod=hashlib.sha256).digest()

        # CRITICAL: constant-time comparison prevents timing side-channel attacks.
        if not hmac.compare_digest(expected, self.digest):
            raise HmacVerificationError("hmac did not match expected")


def verify_hub_signature(header: str, secret: bytes | None, body: bytes) -> None:
    """Verify a webhook body against its signature header.

    Args:
        header: Value of the ``X-Hub-Signature-256`` header.
        secret: The shared webhook secret, or None when authentication is
            disabled by the operator.
        body: Raw, unmodified request body bytes.

    Raises:
        HubSignatureError: Any subclass, see ``HubSignature256``.
    """
    if secret is None:
        return

    signature = HubSignature256.parse(header)
    signature.verify(secret, body)
    logger.debug("Webhook signature verified")
