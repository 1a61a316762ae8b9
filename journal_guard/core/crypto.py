"""
Record encryption.

Current records are sealed with ChaCha20-Poly1305 under a fresh random nonce.
Legacy records were sealed with AES-256-GCM and an explicit IV; they can be
opened but never produced.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from journal_guard.storage.models import (
    CURRENT_RECORD_VERSION,
    EncryptedRecord,
    LegacyRecord,
)
from .errors import IntegrityError
from .keys import Key

NONCE_SIZE = 12
LEGACY_IV_SIZE = 12


class RecordCipher:
    """AEAD operations bound to one vault key.

    Instances are short-lived: build one inside a key session and drop it when
    the session ends.
    """

    def __init__(self, key: Key):
        self._current = ChaCha20Poly1305(key.material)
        self._legacy = AESGCM(key.material)

    def seal(self, plaintext: bytes) -> EncryptedRecord:
        """Encrypt *plaintext* into a current-format record with a fresh nonce."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._current.encrypt(nonce, plaintext, None)
        return EncryptedRecord(
            nonce=nonce,
            ciphertext=ciphertext,
            record_version=CURRENT_RECORD_VERSION,
        )

    def open(self, record: EncryptedRecord) -> bytes:
        """Decrypt a current-format record.

        Raises:
            IntegrityError: If the authentication tag does not verify
        """
        if len(record.nonce) != NONCE_SIZE:
            raise IntegrityError("record nonce has the wrong length")
        try:
            return self._current.decrypt(record.nonce, record.ciphertext, None)
        except InvalidTag as e:
            raise IntegrityError("record failed authentication") from e

    def open_legacy(self, record: LegacyRecord) -> bytes:
        """Decrypt a legacy AES-GCM record.

        Raises:
            IntegrityError: If the authentication tag does not verify
        """
        if len(record.iv) != LEGACY_IV_SIZE:
            raise IntegrityError("legacy record IV has the wrong length")
        try:
            return self._legacy.decrypt(record.iv, record.data, None)
        except InvalidTag as e:
            raise IntegrityError("legacy record failed authentication") from e
