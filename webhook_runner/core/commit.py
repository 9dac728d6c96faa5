"""Git commit objects and their canonical signed payload.

``parse_commit(bytes) -> CommitObject`` reads the raw output of
``git cat-file commit``; ``canonical_payload(CommitObject) -> bytes``
rebuilds the exact bytes that were hashed when the commit was signed:

    tree <tree-id>
    parent <parent-id>            (one per parent, in order)
    author <name> <email> <unix-seconds> <+HHMM>
    committer <name> <email> <unix-seconds> <+HHMM>
    <blank>
    <message lines>
    <trailing newline>

A single differing byte (field order, timezone format, the final newline)
makes a legitimately signed commit fail verification.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_PERSON_RE = re.compile(rb"^(?P<name>.*?) ?<(?P<email>[^<>]*)> (?P<seconds>-?\d+) (?P<tz>[+-]\d{4})$")


# =============================================================================
#  Data classes
# =============================================================================


@dataclass(frozen=True)
class Person:
    """An author or committer signature line."""

    name: bytes
    email: bytes
    seconds: int
    offset_minutes: int
    negative: bool = False  # Keeps "-0000" distinct from "+0000"

    @classmethod
    def parse(cls, value: bytes) -> Person:
        """Parse ``Name <email> 1700000000 +0130``."""
        match = _PERSON_RE.match(value)
        if match is None:
            raise ValueError(f"malformed signature line: {value!r}")
        tz = match.group("tz")
        sign = -1 if tz[:1] == b"-" else 1
        minutes = int(tz[1:3]) * 60 + int(tz[3:5])
        return cls(
            name=match.group("name"),
            email=match.group("email"),
            seconds=int(match.group("seconds")),
            offset_minutes=sign * minutes,
            negative=sign < 0,
        )

    def format(self, header: str) -> bytes:
        """Render ``<header> <name> <email> <seconds> <±HHMM>``."""
        offset = self.offset_minutes
        sign = b"-" if offset < 0 or self.negative else b"+"
        hours, minutes = divmod(abs(offset), 60)
        return b"%s %s <%s> %d %s%02d%02d" % (
            header.encode("ascii"),
            self.name,
            self.email,
            self.seconds,
            sign,
            hours,
            minutes,
        )


@dataclass(frozen=True)
class CommitObject:
    """The fields of a commit needed to verify its signature."""

    id: str
    tree: str
    parents: tuple[str, ...]
    author: Person
    committer: Person
    message: bytes
    headers: dict[bytes, bytes] = field(default_factory=dict, compare=False)

    def header_field(self, name: str) -> bytes | None:
        """Return an arbitrary header value (continuation lines joined by newline)."""
        return self.headers.get(name.encode("ascii"))

    @property
    def gpgsig(self) -> bytes | None:
        return self.header_field("gpgsig")


# =============================================================================
#  Parsing
# =============================================================================


def parse_commit(commit_id: str, raw: bytes) -> CommitObject:
    """Parse the raw body of a commit object.

    Raises:
        ValueError: If required headers are missing or malformed.
    """
    head, sep, message = raw.partition(b"\n\n")
    if not sep:
        # No message at all; the header block may still end with a newline.
        head = raw.rstrip(b"\n")
        message = b""

    headers: dict[bytes, bytes] = {}
    parents: list[str] = []
    last_key: bytes | None = None

    for line in head.split(b"\n"):
        if line.startswith(b" ") and last_key is not None:
            # Continuation line of a multi-line header (gpgsig, mergetag).
            headers[last_key] += b"\n" + line[1:]
            continue
        key, _, value = line.partition(b" ")
        if key == b"parent":
            parents.append(value.decode("ascii"))
        elif key not in headers:
            headers[key] = value
        last_key = key

    try:
        return CommitObject(
            id=commit_id,
            tree=headers[b"tree"].decode("ascii"),
            parents=tuple(parents),
            author=Person.parse(headers[b"author"]),
            committer=Person.parse(headers[b"committer"]),
            message=message,
            headers=headers,
        )
    except KeyError as exc:
        raise ValueError(f"commit {commit_id} is missing header {exc.args[0]!r}") from exc


# =============================================================================
#  Canonical payload
# =============================================================================


def message_lines(message: bytes) -> list[bytes]:
    """Split a message into lines; a final newline does not start a new line."""
    if not message:
        return []
    lines = message.split(b"\n")
    if lines[-1] == b"":
        lines.pop()
    return lines


def canonical_payload(commit: CommitObject) -> bytes:
    """Rebuild the byte sequence that was signed for ``commit``."""
    lines = [b"tree " + commit.tree.encode("ascii")]
    lines.extend(b"parent " + parent.encode("ascii") for parent in commit.parents)
    lines.append(commit.author.format("author"))
    lines.append(commit.committer.format("committer"))
    lines.append(b"")
    lines.extend(message_lines(commit.message))
    # Significant trailing newline.
    lines.append(b"")
    return b"\n".join(lines)
