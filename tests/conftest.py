"""Shared fixtures: throwaway git repositories and a throwaway GnuPG home.

Integration tests that need the ``git`` / ``gpg`` / ``gpgv`` binaries are
skipped when they are not installed.
"""

from __future__ import annotations

import base64
import os
import shutil
import subprocess
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
requires_gpg = pytest.mark.skipif(
    shutil.which("gpg") is None or shutil.which("gpgv") is None,
    reason="gpg / gpgv are not installed",
)

GIT_TEST_ENV = {
    "GIT_AUTHOR_NAME": "Webhook Runner Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Webhook Runner Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
    "GIT_CONFIG_GLOBAL": os.devnull,
}


def run_git(cwd: Path, *args: str, env: dict[str, str] | None = None) -> str:
    """Run git for test setup and return stripped stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env={**os.environ, **GIT_TEST_ENV, **(env or {})},
        capture_output=True,
        check=True,
    )
    return result.stdout.decode().strip()


def is_detached(checkout: Path) -> bool:
    """True when HEAD of ``checkout`` is not a symbolic ref to a branch."""
    result = subprocess.run(
        ["git", "symbolic-ref", "--quiet", "HEAD"], cwd=checkout, capture_output=True, check=False
    )
    return result.returncode != 0


@dataclass
class OriginRepo:
    """A local repository used as the clone source."""

    path: Path
    gnupg_home: Path | None = None
    signing_key: str | None = None
    commits: list[str] = field(default_factory=list)

    @property
    def url(self) -> str:
        return str(self.path)

    def commit(
        self,
        message: str,
        *,
        sign: bool = False,
        date: str = "1700000000 +0530",
        committer_date: str | None = None,
    ) -> str:
        """Create a commit touching one file and return its id."""
        (self.path / "file.txt").write_text(f"{len(self.commits)}: {message}\n")
        run_git(self.path, "add", "file.txt")
        env = {"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": committer_date or date}
        args = ["commit", "--quiet", "-m", message]
        if sign:
            assert self.gnupg_home is not None and self.signing_key is not None
            env["GNUPGHOME"] = str(self.gnupg_home)
            args = [
                "-c", "gpg.program=gpg",
                "-c", f"user.signingkey={self.signing_key}",
                "commit", "--quiet", "-S", "-m", message,
            ]
        else:
            args = ["-c", "commit.gpgsign=false", *args]
        run_git(self.path, *args, env=env)
        oid = run_git(self.path, "rev-parse", "HEAD")
        self.commits.append(oid)
        return oid


@pytest.fixture()
def origin(tmp_path: Path) -> OriginRepo:
    path = tmp_path / "origin"
    path.mkdir()
    run_git(path, "-c", "init.defaultBranch=main", "init", "--quiet")
    return OriginRepo(path)


# =============================================================================
#  OpenPGP test data
# =============================================================================


def packet(tag: int, body: bytes) -> bytes:
    """Encode one new-format packet (one- or two-octet body length)."""
    if len(body) < 192:
        length = bytes([len(body)])
    else:
        n = len(body) - 192
        length = bytes([(n >> 8) + 192, n & 0xFF])
    return bytes([0xC0 | tag]) + length + body


def first_packet(data: bytes) -> bytes:
    """Slice the first packet off a binary keyring as gpg exports it."""
    ctb = data[0]
    if ctb & 0x40:
        first = data[1]
        if first < 192:
            return data[:2 + first]
        return data[:3 + ((first - 192) << 8) + data[2] + 192]
    length_type = ctb & 0x03
    size = {0: 1, 1: 2, 2: 4}[length_type]
    return data[:1 + size + int.from_bytes(data[1:1 + size], "big")]


def _crc24(data: bytes) -> int:
    crc = 0xB704CE
    for byte in data:
        crc ^= byte << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= 0x1864CFB
    return crc & 0xFFFFFF


def armor(data: bytes, kind: str = "PGP SIGNATURE") -> bytes:
    encoded = base64.b64encode(data).decode()
    lines = [encoded[i:i + 64] for i in range(0, len(encoded), 64)]
    checksum = base64.b64encode(_crc24(data).to_bytes(3, "big")).decode()
    return (
        f"-----BEGIN {kind}-----\n\n" + "\n".join(lines) + f"\n={checksum}\n-----END {kind}-----\n"
    ).encode()


# =============================================================================
#  GnuPG
# =============================================================================


@dataclass(frozen=True)
class GpgKey:
    home: Path
    fingerprint: str
    public_keyring: bytes
    armored_keyring: bytes

    def sign(self, data: bytes) -> bytes:
        """Binary detached signature over ``data``."""
        return subprocess.run(
            ["gpg", "--batch", "--homedir", str(self.home), "--pinentry-mode", "loopback",
             "--passphrase", "", "--local-user", self.fingerprint, "--detach-sign"],
            input=data,
            capture_output=True,
            check=True,
        ).stdout


def _generate_key(uid: str) -> Iterator[GpgKey]:
    # Short path so the agent socket fits in sun_path.
    home = Path(tempfile.mkdtemp(prefix="wr-gpg-"))
    home.chmod(0o700)
    gpg = ["gpg", "--batch", "--homedir", str(home)]
    try:
        subprocess.run(
            [*gpg, "--pinentry-mode", "loopback", "--passphrase", "",
             "--quick-generate-key", uid, "ed25519", "sign", "never"],
            capture_output=True,
            check=True,
        )
        listing = subprocess.run(
            [*gpg, "--with-colons", "--list-keys"], capture_output=True, check=True
        ).stdout.decode()
        fpr = next(line.split(":")[9] for line in listing.splitlines() if line.startswith("fpr:"))
        exported = subprocess.run([*gpg, "--export", fpr], capture_output=True, check=True).stdout
        armored = subprocess.run([*gpg, "--armor", "--export", fpr], capture_output=True, check=True).stdout
        yield GpgKey(home=home, fingerprint=fpr, public_keyring=exported, armored_keyring=armored)
    finally:
        if shutil.which("gpgconf") is not None:
            subprocess.run(
                ["gpgconf", "--homedir", str(home), "--kill", "gpg-agent"],
                capture_output=True,
                check=False,
            )
        shutil.rmtree(home, ignore_errors=True)


@pytest.fixture(scope="session")
def gpg_key() -> Iterator[GpgKey]:
    if shutil.which("gpg") is None:
        pytest.skip("gpg is not installed")
    yield from _generate_key("Webhook Runner Test <test@example.com>")


@pytest.fixture(scope="session")
def other_gpg_key() -> Iterator[GpgKey]:
    if shutil.which("gpg") is None:
        pytest.skip("gpg is not installed")
    yield from _generate_key("Somebody Else <else@example.com>")


@pytest.fixture()
def signed_origin(origin: OriginRepo, gpg_key: GpgKey) -> OriginRepo:
    origin.gnupg_home = gpg_key.home
    origin.signing_key = gpg_key.fingerprint
    return origin
