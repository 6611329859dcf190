"""Allow-list store for allowsync.

Owns the on-disk nginx include file holding the allow-list:

    allow 140.82.112.0/20;
    allow 2a0a:a440::/29;

and the in-memory CIDR set it was parsed from. Knows nothing about where
candidate sets come from.

FAIL-CLOSED PARSING:
  If any line of the persisted file is not a valid entry, the whole file is
  discarded and the store starts from the EMPTY set. Entries parsed before the
  bad line are never kept: an empty allow-list denies everything, a partially
  trusted one may admit ranges nobody vouched for. The next successful fetch
  repopulates the file.

SAVE:
  Temp file + rename keeps the target's mode and owner. If the directory
  does not allow that, the file is rewritten in place instead.

SAVE FAILURE:
  update() rolls the in-memory set back to the last persisted one when save()
  fails, so the next identical candidate is detected as a change again and
  the write (and hook) are retried.
"""

from __future__ import annotations

import contextlib
import ipaddress
import os
import stat
import tempfile
from typing import Iterable, Union

from allowsync.constants import ALLOW_KEYWORD, ENTRY_TERMINATOR
from allowsync.errors import LoadError, PersistError
from allowsync.utils.logger import get_logger

logger = get_logger(__name__)

# Address plus prefix length; host bits are kept as written.
CIDR = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]

# Mode for a target that disappeared between load() and save().
_DEFAULT_FILE_MODE = 0o644


# ─── Parsing / serialization ──────────────────────────────────────────────────


class AllowlistParseError(ValueError):
    """A persisted line is not a valid `allow <CIDR>;` entry."""

    def __init__(self, line_number: int, line: str, cause: str) -> None:
        self.line_number = line_number
        self.line = line
        self.cause = cause
        super().__init__(
            f"Failed to parse CIDR [{line}] at line {line_number}: {cause}"
        )


def parse_cidr(text: str) -> CIDR:
    """Parse a CIDR in standard notation (``10.0.0.0/24``, ``2001:db8::/32``).

    A bare address is a full-length prefix (``/32`` or ``/128``).

    Raises:
        ValueError: text is not an IPv4 or IPv6 address with optional prefix.
    """
    return ipaddress.ip_interface(text)


# Unicode White_Space. str.strip() would also drop \x1c-\x1f, which are not
# whitespace here and must fail CIDR parsing.
_WHITESPACE = (
    " \t\n\x0b\x0c\r\x85\xa0\u1680"
    "\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a"
    "\u2028\u2029\u202f\u205f\u3000"
)


def _split_lines(content: str) -> list[str]:
    """Split on ``\\n`` and ``\\r\\n`` only (not on \\x1c, \\u2028, ...)."""
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _normalize_line(line: str) -> str:
    return line.replace(ENTRY_TERMINATOR, "").replace(ALLOW_KEYWORD, "").strip(_WHITESPACE)


def _parse_lines(content: str) -> frozenset[CIDR]:
    """Strict parse, raises AllowlistParseError on the first bad line."""
    entries: set[CIDR] = set()
    for line_number, raw_line in enumerate(_split_lines(content), start=1):
        text = _normalize_line(raw_line)
        if not text:
            continue
        try:
            entries.add(parse_cidr(text))
        except ValueError as exc:
            raise AllowlistParseError(line_number, text, str(exc)) from exc
    return frozenset(entries)


def parse_allowlist(content: str) -> frozenset[CIDR]:
    """Parse persisted allow-list content into a CIDR set.

    Blank lines are ignored. If any other line fails to parse, the result is
    the EMPTY set (never a partial one) and an ERROR naming the offending line
    and its 1-based line number is logged.
    """
    try:
        return _parse_lines(content)
    except AllowlistParseError as exc:
        logger.error(
            "Failed to parse allow list entry, skipping rest of the file, "
            "allow list reset to empty",
            line=exc.line,
            line_number=exc.line_number,
            error=exc.cause,
        )
        return frozenset()


def _sort_key(cidr: CIDR) -> tuple:
    return (cidr.version, cidr.network.network_address, cidr.network.prefixlen, cidr.ip)


def serialize_allowlist(entries: Iterable[CIDR]) -> str:
    """Render entries as `allow <CIDR>;` lines, one per entry.

    Output is sorted (IPv4 first, then by network) so saving the same set
    twice produces identical bytes.
    """
    return "".join(
        f"{ALLOW_KEYWORD}{cidr.with_prefixlen}{ENTRY_TERMINATOR}\n"
        for cidr in sorted(set(entries), key=_sort_key)
    )


# ─── AllowListStore ───────────────────────────────────────────────────────────


class AllowListStore:
    """Durable, authoritative holder of the current allow-list.

    Usage:
        store = AllowListStore.load("/etc/nginx/github-hooks.conf")
        if store.update(candidate):
            ...  # file rewritten, run the after-update hook

    Single-writer: only the reconciliation loop mutates the store, one cycle
    at a time. No locking.
    """

    def __init__(self, path: str, entries: Iterable[CIDR] = ()) -> None:
        self._path = path
        self._entries: frozenset[CIDR] = frozenset(entries)

    # ── Public read API ───────────────────────────────────────────────────────

    @property
    def path(self) -> str:
        return self._path

    @property
    def entries(self) -> frozenset[CIDR]:
        """The CIDR set currently believed to be persisted."""
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"AllowListStore(path={self._path!r}, entries={len(self._entries)})"

    # ── Load ──────────────────────────────────────────────────────────────────

    @classmethod
    def load(cls, path: str) -> "AllowListStore":
        """Open (creating if absent) the allow-list file and parse its content.

        Parse failures are not errors: they yield an empty store (fail-closed).
        Undecodable bytes are replaced, so they fail CIDR parsing the same way.

        Raises:
            LoadError: the file cannot be opened, created or read.
        """
        try:
            with open(path, "a+", encoding="utf-8", errors="replace") as fh:
                fh.seek(0)
                content = fh.read()
        except OSError as exc:
            raise LoadError(f"Failed to load allow list {path}", str(exc)) from exc

        entries = parse_allowlist(content)
        logger.info("Allow list loaded", path=path, count=len(entries))
        return cls(path, entries)

    # ── Compare and replace ───────────────────────────────────────────────────

    def update(self, candidate: Iterable[CIDR]) -> bool:
        """Replace the allow-list with ``candidate`` if it differs.

        Set equality decides: ordering and duplicates in ``candidate`` never
        count as a change.

        Returns:
            True if the set changed and was persisted, False if it was equal
            (no write happens).

        Raises:
            PersistError: the new set could not be written. The in-memory set
                is rolled back to the previously persisted one.
        """
        new_entries = frozenset(candidate)
        if new_entries == self._entries:
            return False

        previous = self._entries
        self._entries = new_entries
        try:
            self.save()
        except PersistError:
            self._entries = previous
            raise

        logger.info(
            "Allow list persisted",
            path=self._path,
            count=len(new_entries),
            added=len(new_entries - previous),
            removed=len(previous - new_entries),
        )
        return True

    # ── Save ──────────────────────────────────────────────────────────────────

    def save(self) -> None:
        """Replace the file content with the current set.

        Normally atomic: a temporary file in the target's directory is written,
        fsynced, given the target's mode and owner, then renamed over the
        target, so readers see either the old or the new file. A symlinked
        target is followed; the link itself stays in place.

        When the directory is not writable, or the temporary file cannot take
        over the target's owner, the target is truncated and rewritten in
        place instead (same inode, owner, ACLs and security labels).

        Raises:
            PersistError: the content could not be written either way.
        """
        target = os.path.realpath(self._path)
        content = serialize_allowlist(self._entries)

        try:
            _replace_atomically(target, content)
            return
        except PermissionError as exc:
            logger.warning(
                "Atomic replace not permitted, rewriting in place",
                path=self._path,
                error=str(exc),
            )
        except OSError as exc:
            raise PersistError(f"Failed to save allow list {self._path}", str(exc)) from exc

        try:
            _write_in_place(target, content)
        except OSError as exc:
            raise PersistError(f"Failed to save allow list {self._path}", str(exc)) from exc


def _replace_atomically(target: str, content: str) -> None:
    """Temp file + fsync + rename. The temp file never outlives a failure."""
    fd, tmp_path = tempfile.mkstemp(
        prefix=f".{os.path.basename(target)}.",
        suffix=".tmp",
        dir=os.path.dirname(target),
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        _copy_metadata(target, tmp_path)
        os.replace(tmp_path, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _write_in_place(target: str, content: str) -> None:
    """Truncate-then-write on the existing target."""
    with open(target, "r+", encoding="utf-8") as fh:
        fh.seek(0)
        fh.truncate()
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())


def _copy_metadata(target: str, tmp_path: str) -> None:
    """Give ``tmp_path`` the target's mode and owner (mkstemp creates 0600 files).

    Raises PermissionError when the owner cannot be changed.
    """
    try:
        st = os.stat(target)
    except FileNotFoundError:
        os.chmod(tmp_path, _DEFAULT_FILE_MODE)
        return

    tmp_st = os.stat(tmp_path)
    if (tmp_st.st_uid, tmp_st.st_gid) != (st.st_uid, st.st_gid):
        os.chown(tmp_path, st.st_uid, st.st_gid)
    os.chmod(tmp_path, stat.S_IMODE(st.st_mode))
