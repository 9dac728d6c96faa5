"""Tests for commit signature verification.

Structure checks feed hand-built or damaged signatures through gpg;
end-to-end checks sign real commits with a throwaway GnuPG key and
verify them through gpgv.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Iterator
from pathlib import Path

import pytest

from conftest import GpgKey, OriginRepo, armor, first_packet, packet, requires_gpg, requires_git
from webhook_runner.core.commit import CommitObject, Person
from webhook_runner.core.exceptions import InvalidSignatureError, MalformedSignatureError
from webhook_runner.core.gnupg import GnuPG
from webhook_runner.core.keyring import KeyringStore
from webhook_runner.core.repository import fetch_repository
from webhook_runner.core.signature import (
    GpgvResult,
    decode_signature,
    extract_signature,
    verify_commit,
)

TAG_LITERAL = 11
LITERAL = packet(TAG_LITERAL, b"b\x00\x00\x00\x00\x00literal data")


def _commit(gpgsig: bytes | None) -> CommitObject:
    person = Person(b"A", b"a@example.com", 1700000000, 0)
    headers = {} if gpgsig is None else {b"gpgsig": gpgsig}
    return CommitObject(
        id="0" * 40,
        tree="4b825dc642cb6eb9a060e54bf8d69288fbee4904",
        parents=(),
        author=person,
        committer=person,
        message=b"msg\n",
        headers=headers,
    )


@pytest.fixture()
def gpg() -> Iterator[GnuPG]:
    with GnuPG() as home:
        yield home


# =============================================================================
#  Structure
# =============================================================================


class TestExtract:

    def test_missing_gpgsig(self) -> None:
        with pytest.raises(MalformedSignatureError):
            extract_signature(_commit(None))

    def test_returns_header_value(self) -> None:
        assert extract_signature(_commit(b"-----BEGIN PGP SIGNATURE-----")) == b"-----BEGIN PGP SIGNATURE-----"


@requires_gpg
class TestStructure:

    def test_undecodable_gpgsig(self, gpg: GnuPG) -> None:
        with pytest.raises(MalformedSignatureError):
            decode_signature(gpg, b"-----BEGIN PGP SIGNATURE-----\n\n-----END PGP SIGNATURE-----")

    def test_not_armored(self, gpg: GnuPG) -> None:
        with pytest.raises(MalformedSignatureError):
            decode_signature(gpg, b"just some text")

    def test_single_signature_accepted(self, gpg: GnuPG, gpg_key: GpgKey) -> None:
        signature = gpg_key.sign(b"payload")
        assert decode_signature(gpg, armor(signature)) == signature

    def test_crc_mismatch_tolerated(self, gpg: GnuPG, gpg_key: GpgKey) -> None:
        signature = gpg_key.sign(b"payload")
        damaged = re.sub(rb"\n=[A-Za-z0-9+/]{4}\n", b"\n=AAAA\n", armor(signature))
        assert decode_signature(gpg, damaged) == signature

    def test_truncated_signature(self, gpg: GnuPG, gpg_key: GpgKey) -> None:
        with pytest.raises(MalformedSignatureError):
            decode_signature(gpg, armor(gpg_key.sign(b"payload")[:-2]))

    def test_two_signatures_rejected(self, gpg: GnuPG, gpg_key: GpgKey) -> None:
        signature = gpg_key.sign(b"payload")
        with pytest.raises(InvalidSignatureError, match="unexpected message structure"):
            decode_signature(gpg, armor(signature + signature))

    def test_literal_packet_rejected(self, gpg: GnuPG) -> None:
        with pytest.raises(InvalidSignatureError, match="unexpected message structure"):
            decode_signature(gpg, armor(LITERAL))

    def test_signature_plus_literal_rejected(self, gpg: GnuPG, gpg_key: GpgKey) -> None:
        with pytest.raises(InvalidSignatureError):
            decode_signature(gpg, armor(gpg_key.sign(b"payload") + LITERAL))

    def test_empty_keyring_rejects_before_gpgv(self, gpg_key: GpgKey) -> None:
        commit = _commit(armor(gpg_key.sign(b"payload")))
        with pytest.raises(InvalidSignatureError, match="no certificates"):
            verify_commit(commit, KeyringStore())


class TestGpgvResult:

    def test_parse_status_lines(self) -> None:
        output = (
            b"[GNUPG:] NEWSIG\n"
            b"[GNUPG:] GOODSIG ABCDEF0123456789 Alice\n"
            b"not a status line\n"
            b"[GNUPG:] VALIDSIG AAAA 2024-01-01 1700000000 0 4 0 22 10 00 BBBB\n"
        )
        result = GpgvResult.parse(0, output)
        assert [keyword for keyword, _ in result.status] == ["NEWSIG", "GOODSIG", "VALIDSIG"]
        assert result.keywords("VALIDSIG")[0][9] == "BBBB"


# =============================================================================
#  End to end
# =============================================================================


@requires_git
@requires_gpg
class TestVerifyCommit:

    def _fetch_commit(self, origin: OriginRepo, oid: str, tmp_path: Path) -> CommitObject:
        workdir = tmp_path / "work"
        workdir.mkdir(exist_ok=True)
        with fetch_repository(origin.url, oid, 60, workdir=workdir) as handle:
            return handle.read_commit()

    def test_valid_signature(self, signed_origin: OriginRepo, gpg_key: GpgKey, tmp_path: Path) -> None:
        oid = signed_origin.commit("signed", sign=True, date="1700000000 +0530", committer_date="1700000100 -0230")
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        verify_commit(commit, KeyringStore.from_bytes(gpg_key.public_keyring))

    def test_valid_signature_with_parent_and_body(
        self, signed_origin: OriginRepo, gpg_key: GpgKey, tmp_path: Path
    ) -> None:
        signed_origin.commit("first", sign=True)
        oid = signed_origin.commit("second\n\nwith a body\n\n\nand blank lines", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        assert commit.parents
        verify_commit(commit, KeyringStore.from_bytes(gpg_key.public_keyring))

    def test_armored_keyring(self, signed_origin: OriginRepo, gpg_key: GpgKey, tmp_path: Path) -> None:
        oid = signed_origin.commit("signed", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        verify_commit(commit, KeyringStore.from_bytes(gpg_key.armored_keyring))

    def test_mutated_message(self, signed_origin: OriginRepo, gpg_key: GpgKey, tmp_path: Path) -> None:
        oid = signed_origin.commit("signed", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        tampered = dataclasses.replace(commit, message=b"tampered\n")
        with pytest.raises(InvalidSignatureError):
            verify_commit(tampered, KeyringStore.from_bytes(gpg_key.public_keyring))

    def test_mutated_timezone(self, signed_origin: OriginRepo, gpg_key: GpgKey, tmp_path: Path) -> None:
        oid = signed_origin.commit("signed", sign=True, date="1700000000 +0530")
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        shifted = dataclasses.replace(commit.author, offset_minutes=commit.author.offset_minutes + 1)
        with pytest.raises(InvalidSignatureError):
            verify_commit(dataclasses.replace(commit, author=shifted), KeyringStore.from_bytes(gpg_key.public_keyring))

    def test_unsigned_commit(self, origin: OriginRepo, gpg_key: GpgKey, tmp_path: Path) -> None:
        oid = origin.commit("unsigned")
        commit = self._fetch_commit(origin, oid, tmp_path)
        with pytest.raises(MalformedSignatureError):
            verify_commit(commit, KeyringStore.from_bytes(gpg_key.public_keyring))

    def test_unknown_signer(
        self, signed_origin: OriginRepo, other_gpg_key: GpgKey, tmp_path: Path
    ) -> None:
        oid = signed_origin.commit("signed", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        with pytest.raises(InvalidSignatureError):
            verify_commit(commit, KeyringStore.from_bytes(other_gpg_key.public_keyring))

    def test_signer_among_several_certificates(
        self, signed_origin: OriginRepo, gpg_key: GpgKey, other_gpg_key: GpgKey, tmp_path: Path
    ) -> None:
        oid = signed_origin.commit("signed", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        keyring = KeyringStore.from_bytes(other_gpg_key.public_keyring + gpg_key.public_keyring)
        assert len(keyring) == 2
        verify_commit(commit, keyring)

    def test_empty_keyring(self, signed_origin: OriginRepo, tmp_path: Path) -> None:
        oid = signed_origin.commit("signed", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        with pytest.raises(InvalidSignatureError):
            verify_commit(commit, KeyringStore())

    def test_keyring_with_truncated_packet_still_verifies(
        self, signed_origin: OriginRepo, gpg_key: GpgKey, other_gpg_key: GpgKey, tmp_path: Path
    ) -> None:
        oid = signed_origin.commit("signed", sign=True)
        commit = self._fetch_commit(signed_origin, oid, tmp_path)
        truncated = first_packet(other_gpg_key.public_keyring)[:-5]
        keyring = KeyringStore.from_bytes(gpg_key.public_keyring + truncated)
        assert len(keyring) == 1
        verify_commit(commit, keyring)
