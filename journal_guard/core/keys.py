"""
Passphrase-derived key management.

The vault key is derived with PBKDF2-HMAC-SHA256 and held only in process
memory while the vault is unlocked. Lock and unlock transitions are serialized
with in-flight key sessions: a lock request waits until every session that is
currently using the key has finished.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import (
    InvalidPassphraseError,
    KeyDerivationError,
    VaultLockedError,
    VaultNotInitializedError,
)

logger = logging.getLogger(__name__)

KEY_SIZE = 32
SALT_SIZE = 16
DEFAULT_ITERATIONS = 150_000
MIN_PASSPHRASE_LENGTH = 12

_VERIFICATION_LABEL = b"journal-guard:vault-verification:v1"


def _check_strength(passphrase: str) -> None:
    if not passphrase or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValueError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )


class Key:
    """Symmetric vault key. Lives in memory only and refuses serialization."""

    __slots__ = ("_material",)

    def __init__(self, material: bytes):
        if len(material) != KEY_SIZE:
            raise ValueError(f"key material must be {KEY_SIZE} bytes")
        self._material = bytes(material)

    @property
    def material(self) -> bytes:
        return self._material

    def __repr__(self) -> str:
        return "Key(<redacted>)"

    def __reduce__(self):
        raise TypeError("Key material is not serializable")


def derive_key(passphrase: str, salt: bytes, iterations: int) -> Key:
    """Derive the vault key from a passphrase.

    Args:
        passphrase: User-supplied passphrase
        salt: Random per-vault salt
        iterations: PBKDF2 iteration count

    Returns:
        Derived 256-bit key

    Raises:
        KeyDerivationError: If the passphrase or salt is empty or iterations <= 0
    """
    if not passphrase:
        raise KeyDerivationError("passphrase cannot be empty")
    if not isinstance(iterations, int) or iterations <= 0:
        raise KeyDerivationError("iterations must be a positive integer")
    if not salt:
        raise KeyDerivationError("salt cannot be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return Key(kdf.derive(passphrase.encode("utf-8")))


def _verification_tag(key: Key) -> bytes:
    return hmac.new(key.material, _VERIFICATION_LABEL, hashlib.sha256).digest()


@dataclass(frozen=True)
class VaultMetadata:
    """Persisted parameters needed to re-derive and verify the vault key."""
    salt: bytes
    iterations: int
    verification_tag: bytes
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "iterations": self.iterations,
            "verification_tag": base64.b64encode(self.verification_tag).decode("ascii"),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "VaultMetadata":
        return cls(
            salt=base64.b64decode(str(data["salt"])),
            iterations=int(data["iterations"]),
            verification_tag=base64.b64decode(str(data["verification_tag"])),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
        )


class KeyState(Enum):
    """Lifecycle of the vault key."""
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class KeyProvider(Protocol):
    """Capability to hand out the vault key for the duration of one operation.

    A hardware-backed key store can implement this instead of KeyManager.
    """

    @property
    def is_unlocked(self) -> bool:
        ...

    def key_session(self) -> AsyncContextManager[Key]:
        ...


Reseal = Callable[[Key, Key, VaultMetadata], Awaitable[None]]


class KeyManager:
    """In-memory KeyProvider with an explicit lock/unlock state machine."""

    def __init__(
        self,
        metadata: Optional[VaultMetadata] = None,
        iterations: int = DEFAULT_ITERATIONS,
    ):
        self._metadata = metadata
        self._iterations = iterations
        self._key: Optional[Key] = None
        self._sessions = 0
        self._transition = asyncio.Lock()
        self._idle = asyncio.Condition()

    @property
    def metadata(self) -> Optional[VaultMetadata]:
        return self._metadata

    @property
    def state(self) -> KeyState:
        return KeyState.UNLOCKED if self._key is not None else KeyState.LOCKED

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    async def setup(self, passphrase: str) -> VaultMetadata:
        """Initialize the vault with a new passphrase and leave it unlocked.

        Raises:
            ValueError: If the vault is already initialized or the passphrase is too short
        """
        if self._metadata is not None:
            raise ValueError("Vault is already initialized")
        _check_strength(passphrase)

        async with self._transition:
            salt = os.urandom(SALT_SIZE)
            key = await asyncio.to_thread(derive_key, passphrase, salt, self._iterations)
            now = datetime.now(timezone.utc)
            self._metadata = VaultMetadata(
                salt=salt,
                iterations=self._iterations,
                verification_tag=_verification_tag(key),
                created_at=now,
                updated_at=now,
            )
            self._key = key
        logger.info("Vault passphrase initialized")
        return self._metadata

    async def unlock(self, passphrase: str) -> KeyState:
        """Derive the key and compare it to the stored verification tag.

        Raises:
            VaultNotInitializedError: If no passphrase was ever set up
            InvalidPassphraseError: If the passphrase does not match
        """
        if self._metadata is None:
            raise VaultNotInitializedError("Vault has no passphrase configured")
        if not passphrase:
            raise InvalidPassphraseError("Passphrase is required")

        async with self._transition:
            self._key = await self._verify(passphrase)
        logger.info("Vault unlocked")
        return KeyState.UNLOCKED

    async def lock(self) -> None:
        """Drop key material once every in-flight key session has finished."""
        async with self._transition:
            async with self._idle:
                await self._idle.wait_for(lambda: self._sessions == 0)
            self._key = None
        logger.info("Vault locked")

    async def change_passphrase(
        self,
        old_passphrase: str,
        new_passphrase: str,
        reseal: Optional[Reseal] = None,
    ) -> VaultMetadata:
        """Replace the passphrase with a new one under a fresh salt.

        Key sessions are drained first and new ones wait until the change is
        done. *reseal* is awaited with the old key, the new key and the new
        metadata; it must persist both. If it raises, nothing changes and the
        old passphrase stays valid. A locked vault stays locked; an unlocked
        one continues with the new key.

        Raises:
            VaultNotInitializedError: If no passphrase was ever set up
            InvalidPassphraseError: If *old_passphrase* does not match
            ValueError: If the new passphrase is too short or unchanged
        """
        if self._metadata is None:
            raise VaultNotInitializedError("Vault has no passphrase configured")
        _check_strength(new_passphrase)
        if new_passphrase == old_passphrase:
            raise ValueError("New passphrase must differ from the current one")

        async with self._transition:
            old_key = await self._verify(old_passphrase)
            async with self._idle:
                await self._idle.wait_for(lambda: self._sessions == 0)

            salt = os.urandom(SALT_SIZE)
            new_key = await asyncio.to_thread(derive_key, new_passphrase, salt, self._iterations)
            metadata = VaultMetadata(
                salt=salt,
                iterations=self._iterations,
                verification_tag=_verification_tag(new_key),
                created_at=self._metadata.created_at,
                updated_at=datetime.now(timezone.utc),
            )
            if reseal is not None:
                await reseal(old_key, new_key, metadata)
            self._metadata = metadata
            if self._key is not None:
                self._key = new_key
        logger.info("Vault passphrase changed")
        return metadata

    async def _verify(self, passphrase: str) -> Key:
        """Derive the key for *passphrase* and check it. Caller holds the transition lock."""
        if not passphrase:
            raise InvalidPassphraseError("Passphrase is required")
        key = await asyncio.to_thread(
            derive_key, passphrase, self._metadata.salt, self._metadata.iterations
        )
        if not hmac.compare_digest(_verification_tag(key), self._metadata.verification_tag):
            logger.warning("Vault passphrase check failed")
            raise InvalidPassphraseError("Incorrect passphrase")
        return key

    @asynccontextmanager
    async def key_session(self) -> AsyncIterator[Key]:
        """Borrow the key for one operation.

        Raises:
            VaultLockedError: If the vault is locked
        """
        async with self._transition:
            if self._key is None:
                raise VaultLockedError("Vault is locked")
            key = self._key
            self._sessions += 1
        try:
            yield key
        finally:
            async with self._idle:
                self._sessions -= 1
                self._idle.notify_all()
