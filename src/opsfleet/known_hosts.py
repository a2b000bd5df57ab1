"""Trust-on-first-use host key store backed by an OpenSSH known_hosts file.

The decision for a presented host key is:

* stored key equal to the presented key: accept, nothing written;
* stored key that differs: reject, whatever ``auto_add`` says;
* no stored key: append it when ``auto_add`` is set, otherwise reject.

Entries are only ever appended. Replacing a rotated key is a manual edit.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import TrustError
from .log import get_logger

log = get_logger(__name__)

DEFAULT_PORT = 22


def default_known_hosts_path() -> Path:
    return Path("~/.ssh/known_hosts").expanduser()


def host_identity(host: str, port: int = DEFAULT_PORT) -> str:
    """Return the known_hosts name for *host*:*port* (``[host]:port`` off 22)."""
    if port == DEFAULT_PORT:
        return host
    return f"[{host}]:{port}"


@dataclass(frozen=True)
class HostKey:
    """A public host key: algorithm name plus the SSH wire-format blob."""

    algorithm: str
    blob: bytes

    @classmethod
    def from_openssh(cls, algorithm: str, encoded: str) -> "HostKey":
        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid base64 key data: {e}") from e
        if not blob:
            raise ValueError("empty key data")
        return cls(algorithm, blob)

    @classmethod
    def from_ssh_key(cls, key) -> "HostKey":
        """Build from an ``asyncssh.SSHKey`` presented during the handshake."""
        return cls(key.get_algorithm(), key.public_data)

    @property
    def encoded(self) -> str:
        return base64.b64encode(self.blob).decode("ascii")

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256(self.blob).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")

    def to_openssh(self) -> str:
        return f"{self.algorithm} {self.encoded}"


@dataclass(frozen=True)
class TrustPolicy:
    """Host trust settings shared by the machines of one operator."""

    known_hosts_path: Path
    auto_add: bool = False
    timeout: float = 10.0


class TrustDecision(Enum):
    KNOWN = "known"
    ADDED = "added"


@dataclass(frozen=True)
class _Entry:
    patterns: tuple[str, ...]
    key: HostKey

    def matches(self, hostname: str) -> bool:
        matched = False
        for pattern in self.patterns:
            if pattern.startswith("|1|"):
                if _hashed_match(pattern, hostname):
                    matched = True
            elif pattern.startswith("!"):
                if _pattern_match(hostname, pattern[1:]):
                    return False
            elif _pattern_match(hostname, pattern):
                matched = True
        return matched


def _pattern_match(hostname: str, pattern: str) -> bool:
    """OpenSSH host pattern: only ``*`` and ``?`` are wildcards, case-insensitive.

    Brackets are literal, so ``[host]:2222`` matches itself.
    """
    regex = "".join(
        ".*" if c == "*" else "." if c == "?" else re.escape(c) for c in pattern
    )
    return re.fullmatch(regex, hostname, re.IGNORECASE | re.DOTALL) is not None


def _hashed_match(pattern: str, hostname: str) -> bool:
    try:
        _, _, salt_b64, hash_b64 = pattern.split("|")
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
    except (ValueError, binascii.Error):
        return False
    actual = hmac.new(salt, hostname.encode(), hashlib.sha1).digest()
    return hmac.compare_digest(actual, expected)


def _parse_line(line: str) -> _Entry | None:
    line = line.strip()
    if not line or line.startswith("#") or line.startswith("@"):
        return None

    fields = line.split()
    if len(fields) < 3:
        raise ValueError("expected '<hosts> <algorithm> <key>'")

    patterns = tuple(p for p in fields[0].split(",") if p)
    if not patterns:
        raise ValueError("no host patterns")
    return _Entry(patterns, HostKey.from_openssh(fields[1], fields[2]))


_path_locks: dict[Path, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _path_locks_guard:
        return _path_locks.setdefault(path, threading.Lock())


class KnownHosts:
    """A known_hosts file. The file is re-read on every lookup."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def __repr__(self) -> str:
        return f"KnownHosts({str(self.path)!r})"

    def _entries(self) -> list[_Entry]:
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []

        entries = []
        for lineno, line in enumerate(text.splitlines(), 1):
            try:
                entry = _parse_line(line)
            except ValueError as e:
                log.debug(
                    "known_hosts.skip_line", path=str(self.path), line=lineno, reason=str(e)
                )
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    def lookup(self, hostname: str) -> HostKey | None:
        """Return the first stored key for *hostname*, or None."""
        for entry in self._entries():
            if entry.matches(hostname):
                return entry.key
        return None

    def add(self, hostname: str, key: HostKey) -> bool:
        """Append an entry for *hostname* unless one already exists.

        Returns True when a line was written. Writers in this process are
        serialized per file and re-check under the lock, so concurrent first
        connections to the same host write a single entry.
        """
        lock = _lock_for(self.path.resolve())
        with lock:
            if self.lookup(hostname) is not None:
                return False

            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            line = f"{hostname} {key.to_openssh()}\n".encode()
            with open(self.path, "ab+") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        line = b"\n" + line
                f.write(line)
            return True

    def verify(self, hostname: str, key: HostKey, auto_add: bool = False) -> TrustDecision:
        """Decide whether *key* may be trusted for *hostname*.

        Raises ``TrustError`` for a changed key (always) or an unknown host
        when *auto_add* is off.
        """
        known = self.lookup(hostname)

        if known is not None:
            if known == key:
                return TrustDecision.KNOWN
            log.error(
                "known_hosts.key_mismatch",
                host=hostname,
                expected=known.fingerprint,
                presented=key.fingerprint,
            )
            raise TrustError(
                f"host identity changed for {hostname}: expected {known.fingerprint} "
                f"but got {key.fingerprint} (possible interception)"
            )

        if not auto_add:
            raise TrustError(
                f"host not trusted: no key for {hostname} in {self.path} "
                f"(presented {key.algorithm} {key.fingerprint})"
            )

        if not self.add(hostname, key):
            # Another writer pinned this host between our lookup and the lock.
            return self.verify(hostname, key, auto_add=False)

        log.warning(
            "known_hosts.added",
            host=hostname,
            algorithm=key.algorithm,
            fingerprint=key.fingerprint,
            path=str(self.path),
        )
        return TrustDecision.ADDED
