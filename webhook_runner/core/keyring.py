"""Trusted OpenPGP certificates, loaded once at startup.

A keyring file is a concatenation of certificates, either binary or
ASCII-armored.  gpg frames the packets, and each certificate is handed
to gpg on its own, so a malformed one is logged and dropped while the
others are still loaded.  A certificate only counts when gpg accepts it
as a key with a validly self-signed user id.

An empty store is a legal configuration; it simply fails every
verification.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from webhook_runner.core import gnupg
from webhook_runner.core.exceptions import (
    InvalidKeyringFileError,
    MalformedPacketError,
    ProcessTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Certificate:
    """One transferable public key, as gpg would import it."""

    fingerprint: str
    user_ids: tuple[str, ...]
    packets: bytes

    def __str__(self) -> str:
        return self.user_ids[0] if self.user_ids else self.fingerprint


@dataclass(frozen=True)
class KeyringStore:
    """Immutable set of certificates trusted for one ref type."""

    certificates: tuple[Certificate, ...] = ()
    source: str = ""
    fingerprints: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "fingerprints", frozenset(c.fingerprint for c in self.certificates)
        )

    def __len__(self) -> int:
        return len(self.certificates)

    def __iter__(self) -> Iterator[Certificate]:
        return iter(self.certificates)

    def __contains__(self, fpr: object) -> bool:
        return isinstance(fpr, str) and fpr.upper() in self.fingerprints

    def export(self) -> bytes:
        """Binary keyring suitable for ``gpgv --keyring``."""
        return b"".join(c.packets for c in self.certificates)

    @classmethod
    def from_path(cls, path: Path | str, timeout: float | None = gnupg.DEFAULT_TIMEOUT) -> KeyringStore:
        """Load certificates from a keyring file.

        Raises:
            InvalidKeyringFileError: The file cannot be read, or gpg cannot
                be run.  Bad packets inside the file are logged and skipped.
        """
        path = Path(path)
        logger.debug("Loading keyring", extra={"path": str(path)})
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise InvalidKeyringFileError(
                f"loading openpgp certificates from {path} failed: {exc}"
            ) from exc

        store = cls.from_bytes(data, source=str(path), timeout=timeout)
        logger.info(
            "Keyring loaded",
            extra={"path": str(path), "certificates": len(store)},
        )
        return store

    @classmethod
    def from_bytes(
        cls, data: bytes, source: str = "", timeout: float | None = gnupg.DEFAULT_TIMEOUT
    ) -> KeyringStore:
        """Parse certificates from raw keyring bytes, dropping malformed ones."""
        if not data.strip():
            return cls((), source=source)

        try:
            with gnupg.GnuPG(timeout) as gpg:
                certificates = _load_certificates(gpg, data, source)
        except (OSError, ProcessTimeoutError) as exc:
            raise InvalidKeyringFileError(
                f"loading openpgp certificates from {source or 'keyring'} failed: {exc}"
            ) from exc
        return cls(tuple(certificates), source=source)


def _load_certificates(gpg: gnupg.GnuPG, data: bytes, source: str) -> list[Certificate]:
    if gnupg.is_armored(data):
        try:
            data = gpg.dearmor(data)
        except MalformedPacketError as exc:
            logger.error("Error parsing OpenPGP armor", extra={"source": source, "error": str(exc)})
            return []

    certificates: list[Certificate] = []
    for block in _certificate_blocks(gpg.list_packets(data), data, source):
        cert = _build_certificate(gpg, block, source)
        if cert is None:
            continue
        if cert.fingerprint in {c.fingerprint for c in certificates}:
            logger.debug("Skipping duplicate cert", extra={"fingerprint": cert.fingerprint})
            continue
        certificates.append(cert)
        if cert.user_ids:
            logger.debug("Found cert", extra={"uid": cert.user_ids[0]})
        else:
            logger.debug("Found cert", extra={"fingerprint": cert.fingerprint})
    return certificates


def _certificate_blocks(listing: gnupg.PacketListing, data: bytes, source: str) -> Iterator[bytes]:
    """Cut the stream at every primary key packet."""
    start: int | None = None
    for packet in listing.packets:
        if packet.tag == gnupg.TAG_PUBLIC_KEY:
            if start is not None:
                yield data[start:packet.offset]
            start = packet.offset
        elif start is None:
            logger.error(
                "Error parsing OpenPGP packet: unexpected packet outside certificate",
                extra={"source": source, "tag": packet.tag},
            )

    if start is not None:
        yield data[start:listing.consumed]

    if not listing.complete:
        logger.error(
            "Error parsing OpenPGP packet: truncated or unreadable data",
            extra={"source": source, "offset": listing.consumed, "size": listing.size},
        )


def _build_certificate(gpg: gnupg.GnuPG, block: bytes, source: str) -> Certificate | None:
    cleaned = gpg.clean_certificate(block)
    keys = gpg.show_keys(cleaned) if cleaned else []
    if len(keys) != 1:
        logger.error(
            "Error parsing OpenPGP certificate: rejected by gpg",
            extra={"source": source, "size": len(block)},
        )
        return None
    return Certificate(fingerprint=keys[0].fingerprint, user_ids=keys[0].user_ids, packets=cleaned)


@dataclass(frozen=True)
class KeyringFiles:
    """Per-ref-type keyrings; None means no verification for that ref type."""

    commit: KeyringStore | None = None
    tag: KeyringStore | None = None
