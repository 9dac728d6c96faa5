"""GnuPG as the OpenPGP parser.

Armor decoding, packet framing and certificate validation are done by
``gpg`` inside a private, throwaway home directory.  This module only
reads gpg's machine-readable output:

    gpg --dearmor                          armor -> binary packets
    gpg --list-packets                     "# off=.. tag=.. hlen=.. plen=.." framing
    gpg --import-options import-export     a certificate with invalid parts removed
    gpg --import-options show-only         --with-colons fingerprint and user ids

Nothing is ever imported into a persistent keyring.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from webhook_runner.core.exceptions import MalformedPacketError
from webhook_runner.core.process import run_process

logger = logging.getLogger(__name__)

GPG_BIN = "gpg"
GPGCONF_BIN = "gpgconf"
DEFAULT_TIMEOUT = 30.0

TAG_SIGNATURE = 2
TAG_PUBLIC_KEY = 6

_GPG_ENV = {"LC_ALL": "C"}

_ARMOR_BEGIN = re.compile(rb"^-----BEGIN PGP [^\r\n]*-----[ \t]*\r?$", re.MULTILINE)
_PACKET_LINE = re.compile(
    r"^# off=(?P<off>\d+) ctb=[0-9a-fA-F]{2} tag=(?P<tag>\d+) "
    r"hlen=(?P<hlen>\d+) plen=(?P<plen>\d+)(?P<flags>.*)$"
)
_COLON_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")


def is_armored(data: bytes) -> bool:
    return _ARMOR_BEGIN.search(data) is not None


# =============================================================================
#  Listings
# =============================================================================


@dataclass(frozen=True)
class PacketHeader:
    """Position of one top-level packet in a binary stream."""

    offset: int
    tag: int
    length: int  # header plus body

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class PacketListing:
    """The top-level packets gpg could frame, in stream order."""

    packets: tuple[PacketHeader, ...]
    size: int

    @property
    def consumed(self) -> int:
        return self.packets[-1].end if self.packets else 0

    @property
    def complete(self) -> bool:
        """True when every byte of the input belongs to a framed packet."""
        return self.consumed == self.size

    @property
    def tags(self) -> list[int]:
        return [p.tag for p in self.packets]

    @classmethod
    def parse(cls, output: bytes, size: int) -> PacketListing:
        """Read ``--list-packets`` output.

        Only headers that start exactly where the previous packet ended are
        top-level; anything else is a packet nested inside a compressed one.
        Framing stops at the first packet whose body runs past the input or
        whose length gpg cannot know in advance.
        """
        packets: list[PacketHeader] = []
        position = 0
        for line in output.decode("ascii", errors="replace").splitlines():
            match = _PACKET_LINE.match(line)
            if match is None or int(match["off"]) != position:
                continue
            flags = match["flags"]
            if "indeterminate" in flags:
                packets.append(PacketHeader(position, int(match["tag"]), size - position))
                break
            if "partial" in flags:
                break
            header = PacketHeader(position, int(match["tag"]), int(match["hlen"]) + int(match["plen"]))
            if header.end > size:
                break
            packets.append(header)
            position = header.end
        return cls(tuple(packets), size)


@dataclass(frozen=True)
class KeyListing:
    """One certificate as reported by ``--with-colons``."""

    fingerprint: str
    user_ids: tuple[str, ...]

    @classmethod
    def parse_all(cls, output: bytes) -> list[KeyListing]:
        keys: list[KeyListing] = []
        fingerprint: str | None = None
        user_ids: list[str] = []
        awaiting_primary_fpr = False

        for line in output.decode("utf-8", errors="replace").splitlines():
            fields = line.split(":")
            record = fields[0]
            if record == "pub":
                if fingerprint is not None:
                    keys.append(cls(fingerprint, tuple(user_ids)))
                fingerprint, user_ids = None, []
                awaiting_primary_fpr = True
            elif record == "fpr" and awaiting_primary_fpr and len(fields) > 9:
                fingerprint = fields[9].upper()
                awaiting_primary_fpr = False
            elif record == "uid" and len(fields) > 9:
                user_ids.append(_unescape(fields[9]))
            elif record == "sub":
                awaiting_primary_fpr = False

        if fingerprint is not None:
            keys.append(cls(fingerprint, tuple(user_ids)))
        return keys


def _unescape(value: str) -> str:
    # gpg only escapes the delimiter and control characters.
    return _COLON_ESCAPE.sub(lambda m: chr(int(m[1], 16)), value)


# =============================================================================
#  Home directory
# =============================================================================


class GnuPG:
    """A private GnuPG home that lives as long as this object.

    Use it as a context manager so the directory, and any agent gpg may
    have started for it, are gone on every exit path.
    """

    def __init__(self, timeout: float | None = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._tmp_dir = tempfile.TemporaryDirectory(prefix="webhook-runner-gnupg-")
        self.home = Path(self._tmp_dir.name)
        self.home.chmod(0o700)

    def __enter__(self) -> GnuPG:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        try:
            # Daemons leave their sockets in the home directory.
            if any(self.home.glob("S.*")) and shutil.which(GPGCONF_BIN) is not None:
                run_process(
                    [GPGCONF_BIN, "--homedir", str(self.home), "--kill", "all"],
                    timeout=self.timeout,
                    env=_GPG_ENV,
                    check=False,
                )
        finally:
            self._tmp_dir.cleanup()

    def run(self, *args: str, stdin: bytes) -> subprocess.CompletedProcess[bytes]:
        """Run gpg against this home with ``stdin`` as the input file.

        Raises:
            ProcessTimeoutError: gpg did not finish in time.
            OSError: gpg could not be started.
        """
        cmd = [GPG_BIN, "--homedir", str(self.home), "--batch", "--no-tty", "--no-options", *args]
        result = run_process(cmd, timeout=self.timeout, env=_GPG_ENV, stdin=stdin, check=False)
        if result.returncode != 0:
            logger.debug(
                "gpg reported problems",
                extra={
                    "command": " ".join(args),
                    "exit_code": result.returncode,
                    "stderr": result.stderr.decode("utf-8", errors="replace").strip(),
                },
            )
        return result

    # -------------------------------------------------------------------------
    #  Operations
    # -------------------------------------------------------------------------

    def dearmor(self, data: bytes) -> bytes:
        """Decode every ASCII-armored block in ``data`` and concatenate them.

        A block gpg cannot decode is logged and skipped; CRC mismatches are
        tolerated.

        Raises:
            MalformedPacketError: No block could be decoded.
        """
        starts = [m.start() for m in _ARMOR_BEGIN.finditer(data)]
        decoded: list[bytes] = []
        for index, start in enumerate(starts):
            end = starts[index + 1] if index + 1 < len(starts) else len(data)
            result = self.run("--ignore-crc-error", "--output", "-", "--dearmor", stdin=data[start:end])
            if result.returncode != 0 or not result.stdout:
                logger.error(
                    "Error parsing OpenPGP armor",
                    extra={"block": index, "stderr": result.stderr.decode("utf-8", errors="replace").strip()},
                )
                continue
            decoded.append(result.stdout)

        if not decoded:
            raise MalformedPacketError("no decodable ASCII armor found")
        return b"".join(decoded)

    def list_packets(self, data: bytes) -> PacketListing:
        """Frame the top-level packets of a binary stream."""
        if not data:
            return PacketListing((), 0)
        result = self.run("--list-packets", stdin=data)
        return PacketListing.parse(result.stdout, len(data))

    def clean_certificate(self, data: bytes) -> bytes:
        """Return ``data`` as gpg would import it, or b"" when gpg rejects it.

        gpg drops components without a valid binding signature and rejects
        a key that has no validly self-signed user id at all.
        """
        result = self.run("--import-options", "import-export", "--output", "-", "--import", stdin=data)
        return result.stdout

    def show_keys(self, data: bytes) -> list[KeyListing]:
        result = self.run(
            "--with-colons",
            "--fixed-list-mode",
            "--import-options",
            "show-only",
            "--import",
            stdin=data,
        )
        return KeyListing.parse_all(result.stdout)
