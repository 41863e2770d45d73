"""Keypair persistence for deployment identities.

Keypairs are stored the way the Solana CLI writes them: a JSON array of
the 64 secret-key bytes. A base58 secret key (wallet export format) is
also accepted on read. Loading never regenerates over a file that
exists but does not parse; that surfaces as CorruptIdentityError so an
already-funded identity is not orphaned.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair

from omnideploy.errors import CorruptIdentityError

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class LookupStatus(str, Enum):
    FOUND = "found"
    CORRUPT = "corrupt"
    ABSENT = "absent"


@dataclass(frozen=True)
class KeypairLookup:
    status: LookupStatus
    path: Path
    keypair: Optional[Keypair] = None
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


def short_address(pubkey) -> str:
    text = str(pubkey)
    return f"{text[:8]}...{text[-4:]}"


def keypair_to_json(keypair: Keypair) -> list:
    return list(bytes(keypair))


def keypair_from_json(data) -> Keypair:
    """Parse a 64-byte secret key: a byte array, or a base58 string as wallets export it.

    Raises ValueError on anything else.
    """
    if isinstance(data, str):
        try:
            raw = base58.b58decode(data.strip())
        except ValueError as e:
            raise ValueError(f"not a base58 secret key: {e}") from e
        if len(raw) != 64:
            raise ValueError(f"base58 secret key decodes to {len(raw)} bytes, expected 64")
        return Keypair.from_bytes(raw)
    if not isinstance(data, list) or len(data) != 64:
        raise ValueError("expected a JSON array of 64 secret-key bytes")
    if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in data):
        raise ValueError("secret-key array must hold integers in 0..255")
    return Keypair.from_bytes(bytes(data))


def read_keypair_file(path: Path) -> KeypairLookup:
    """Three-way read of a keypair file."""
    path = Path(path)
    if not path.exists():
        return KeypairLookup(LookupStatus.ABSENT, path)
    try:
        text = path.read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # bare base58 export
            data = text
        keypair = keypair_from_json(data)
    except (OSError, ValueError, TypeError) as e:
        return KeypairLookup(LookupStatus.CORRUPT, path, reason=f"{type(e).__name__}: {e}")
    return KeypairLookup(LookupStatus.FOUND, path, keypair=keypair)


def write_keypair_file(path: Path, keypair: Keypair) -> None:
    """Write a keypair file atomically, owner-readable only. Never overwrites."""
    path = Path(path)
    if path.exists():
        raise FileExistsError(f"Refusing to overwrite keypair file {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".json.tmp")
    try:
        with os.fdopen(temp_fd, "w") as f:
            json.dump(keypair_to_json(keypair), f)
        os.chmod(temp_path, 0o600)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def load_keypair_file(path: Path, create: bool = False) -> Optional[Keypair]:
    """Load a keypair from an explicit path.

    Returns None when absent and ``create`` is False. Raises
    CorruptIdentityError when the file exists but does not parse.
    """
    lookup = read_keypair_file(path)
    if lookup.status is LookupStatus.FOUND:
        return lookup.keypair
    if lookup.status is LookupStatus.CORRUPT:
        raise CorruptIdentityError(
            f"Keypair file {lookup.path} exists but is unreadable; restore or remove it",
            path=str(lookup.path),
            reason=lookup.reason,
        )
    if not create:
        return None
    keypair = Keypair()
    write_keypair_file(lookup.path, keypair)
    logger.info(f"Generated keypair {short_address(keypair.pubkey())} at {lookup.path}")
    return keypair


class KeypairStore:
    """Named keypairs under one directory, ``<name>-keypair.json``."""

    SUFFIX = "-keypair.json"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    @staticmethod
    def slug(name: str) -> str:
        if not name:
            raise ValueError("keypair name must not be empty")
        return _UNSAFE_NAME.sub("_", name)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{self.slug(name)}{self.SUFFIX}"

    def probe(self, name: str) -> KeypairLookup:
        return read_keypair_file(self.path_for(name))

    def load(self, name: str) -> Keypair:
        """Return the persisted keypair, generating and persisting it if absent."""
        keypair = load_keypair_file(self.path_for(name), create=True)
        logger.debug(f"Keypair {name}: {short_address(keypair.pubkey())}")
        return keypair

    def save(self, name: str, keypair: Keypair) -> Path:
        path = self.path_for(name)
        write_keypair_file(path, keypair)
        return path

    def names(self) -> list:
        if not self.directory.exists():
            return []
        return sorted(
            p.name[: -len(self.SUFFIX)]
            for p in self.directory.glob(f"*{self.SUFFIX}")
        )
