"""Commit signature verification against a trusted keyring.

Flow:
    1. Pull the ``gpgsig`` header off the commit object.
    2. Dearmor it with gpg and require exactly one Signature packet.
    3. Rebuild the canonical signed payload (see ``core.commit``).
    4. Run ``gpgv`` with a private homedir and ONLY the store's
       certificates as keyring; SHA-1 is rejected as a weak digest.
    5. Require exactly one VALIDSIG whose primary key is in the store.

Certificates embedded in the signature are never used as trust anchors;
gpgv only ever sees the exported keyring.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from webhook_runner.core import gnupg
from webhook_runner.core.commit import CommitObject, canonical_payload
from webhook_runner.core.exceptions import (
    InvalidSignatureError,
    MalformedPacketError,
    MalformedSignatureError,
)
from webhook_runner.core.keyring import KeyringStore
from webhook_runner.core.process import run_process

logger = logging.getLogger(__name__)

GPGV_BIN = "gpgv"
WEAK_DIGESTS: tuple[str, ...] = ("SHA1",)

# Status keywords that mean a signature was seen but is not acceptable.
_REJECTING_STATUS: frozenset[str] = frozenset(
    {"BADSIG", "ERRSIG", "EXPSIG", "EXPKEYSIG", "REVKEYSIG", "NO_PUBKEY", "FAILURE"}
)


@dataclass(frozen=True)
class GpgvResult:
    """Parsed ``--status-fd`` output of one gpgv run."""

    returncode: int
    status: tuple[tuple[str, tuple[str, ...]], ...]

    def keywords(self, name: str) -> list[tuple[str, ...]]:
        return [args for keyword, args in self.status if keyword == name]

    @classmethod
    def parse(cls, returncode: int, output: bytes) -> GpgvResult:
        status: list[tuple[str, tuple[str, ...]]] = []
        for line in output.decode("utf-8", errors="replace").splitlines():
            if not line.startswith("[GNUPG:] "):
                continue
            keyword, *args = line[len("[GNUPG:] "):].split(" ")
            status.append((keyword, tuple(args)))
        return cls(returncode, tuple(status))


def extract_signature(commit: CommitObject) -> bytes:
    """Return the armored gpgsig header of the commit.

    Raises:
        MalformedSignatureError: The commit has no gpgsig header.
    """
    if commit.gpgsig is None:
        raise MalformedSignatureError(f"commit {commit.id} has no gpgsig header")
    return commit.gpgsig


def decode_signature(gpg: gnupg.GnuPG, gpgsig: bytes) -> bytes:
    """Dearmor a gpgsig header and check its structure.

    Returns:
        The binary signature packet.

    Raises:
        MalformedSignatureError: Nothing decodable, or the packet is truncated.
        InvalidSignatureError: Multiple signatures or non-signature packets
            (encryption, compression, literal data).
    """
    try:
        signature = gpg.dearmor(gpgsig)
    except MalformedPacketError as exc:
        raise MalformedSignatureError(f"parsing gpgsig header as signature failed: {exc}") from exc

    check_signature_structure(gpg.list_packets(signature))
    return signature


def check_signature_structure(listing: gnupg.PacketListing) -> None:
    """Require exactly one Signature packet and nothing else."""
    if not listing.packets:
        raise MalformedSignatureError("no signature")
    if not listing.complete:
        raise MalformedSignatureError(
            f"parsing gpgsig header as signature failed: unreadable data at offset {listing.consumed}"
        )
    if listing.tags != [gnupg.TAG_SIGNATURE]:
        raise InvalidSignatureError(f"unexpected message structure: packet tags {listing.tags}")


def verify_commit(commit: CommitObject, keyring: KeyringStore, timeout: float | None = 30.0) -> None:
    """Verify that ``commit`` is signed by a certificate in ``keyring``.

    Returns only on success; every failure raises, so callers cannot
    accidentally ignore a bad signature.

    Raises:
        MalformedSignatureError: Missing or undecodable gpgsig header.
        InvalidSignatureError: Verification failed for any reason.
        ProcessTimeoutError: gpg or gpgv did not finish in time.
    """
    gpgsig = extract_signature(commit)

    try:
        with gnupg.GnuPG(timeout) as gpg:
            signature = decode_signature(gpg, gpgsig)

            if not len(keyring):
                raise InvalidSignatureError("keyring contains no certificates")

            logger.debug("Building commit message to verify against", extra={"commit": commit.id})
            payload = canonical_payload(commit)

            logger.debug("Verifying bytes", extra={"commit": commit.id, "keyring": keyring.source})
            result = _run_gpgv(gpg.home, signature, payload, keyring, timeout)
    except OSError as exc:
        raise InvalidSignatureError(f"could not run gpg: {exc}") from exc

    fpr = _accepted_fingerprint(result, keyring)
    logger.info(
        "Commit signature verified",
        extra={"commit": commit.id, "fingerprint": fpr},
    )


def _run_gpgv(
    home: Path, signature: bytes, payload: bytes, keyring: KeyringStore, timeout: float | None
) -> GpgvResult:
    keyring_path = home / "trusted.gpg"
    signature_path = home / "commit.sig"
    payload_path = home / "commit.payload"
    keyring_path.write_bytes(keyring.export())
    signature_path.write_bytes(signature)
    payload_path.write_bytes(payload)

    args = [
        GPGV_BIN,
        "--homedir",
        str(home),
        "--status-fd",
        "1",
        "--keyring",
        str(keyring_path),
    ]
    for digest in WEAK_DIGESTS:
        args += ["--weak-digest", digest]
    args += [str(signature_path), str(payload_path)]

    completed = run_process(args, timeout=timeout, check=False)

    result = GpgvResult.parse(completed.returncode, completed.stdout)
    if completed.returncode != 0:
        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        logger.warning(
            "gpgv rejected signature",
            extra={"returncode": completed.returncode, "stderr": stderr},
        )
        raise InvalidSignatureError(
            f"verifying gpgsig header failed: {stderr or 'gpgv exited ' + str(completed.returncode)}"
        )
    return result


def _accepted_fingerprint(result: GpgvResult, keyring: KeyringStore) -> str:
    rejected = [keyword for keyword, _ in result.status if keyword in _REJECTING_STATUS]
    if rejected:
        raise InvalidSignatureError(f"signature verification failed: {', '.join(rejected)}")

    valid = result.keywords("VALIDSIG")
    if len(valid) != 1:
        raise InvalidSignatureError(f"expected exactly one valid signature, got {len(valid)}")

    args = valid[0]
    # VALIDSIG <fpr> <date> <ts> <expire> <ver> <reserved> <pk-algo> <hash-algo> <class> [<primary-fpr>]
    primary = args[9] if len(args) > 9 else args[0]
    if primary.upper() not in keyring:
        raise InvalidSignatureError(f"signing key {primary} is not in the keyring")
    return primary.upper()
