"""
Unit tests for key derivation and the vault lock state machine.
"""

import asyncio
import pickle

import pytest

from journal_guard.core.errors import (
    InvalidPassphraseError,
    KeyDerivationError,
    VaultLockedError,
    VaultNotInitializedError,
)
from journal_guard.core.keys import (
    KEY_SIZE,
    Key,
    KeyManager,
    KeyState,
    VaultMetadata,
    derive_key,
)

PASSPHRASE = "correct-horse"
FAST_ITERATIONS = 1000


class TestDeriveKey:
    """Test PBKDF2 key derivation."""

    def test_same_inputs_give_same_key(self):
        """Test derivation is deterministic for passphrase, salt and iterations."""
        salt = b"\x01" * 16
        first = derive_key(PASSPHRASE, salt, FAST_ITERATIONS)
        second = derive_key(PASSPHRASE, salt, FAST_ITERATIONS)
        assert first.material == second.material
        assert len(first.material) == KEY_SIZE

    def test_different_salt_gives_different_key(self):
        """Test the salt feeds into the key."""
        a = derive_key(PASSPHRASE, b"\x01" * 16, FAST_ITERATIONS)
        b = derive_key(PASSPHRASE, b"\x02" * 16, FAST_ITERATIONS)
        assert a.material != b.material

    @pytest.mark.parametrize("passphrase,salt,iterations", [
        ("", b"salt-salt-salt!!", FAST_ITERATIONS),
        (PASSPHRASE, b"", FAST_ITERATIONS),
        (PASSPHRASE, b"salt-salt-salt!!", 0),
        (PASSPHRASE, b"salt-salt-salt!!", -5),
    ])
    def test_invalid_parameters_raise(self, passphrase, salt, iterations):
        """Test empty passphrase, empty salt and non-positive iterations are rejected."""
        with pytest.raises(KeyDerivationError):
            derive_key(passphrase, salt, iterations)


class TestKey:
    """Test in-memory key handling."""

    def test_repr_hides_material(self):
        """Test the key never prints its bytes."""
        key = Key(b"\xaa" * KEY_SIZE)
        assert "aa" not in repr(key).lower()
        assert "redacted" in repr(key)

    def test_key_cannot_be_pickled(self):
        """Test key material refuses serialization."""
        with pytest.raises(TypeError):
            pickle.dumps(Key(b"\x00" * KEY_SIZE))

    def test_wrong_length_rejected(self):
        """Test only 256-bit keys are accepted."""
        with pytest.raises(ValueError):
            Key(b"short")


class TestVaultMetadata:
    """Test metadata persistence format."""

    @pytest.mark.asyncio
    async def test_metadata_dict_restores_unlockable_vault(self):
        """Test metadata written by setup can unlock a fresh manager."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        metadata = await manager.setup(PASSPHRASE)

        restored = VaultMetadata.from_dict(metadata.to_dict())
        assert restored == metadata

        fresh = KeyManager(restored)
        assert await fresh.unlock(PASSPHRASE) is KeyState.UNLOCKED


class TestKeyManager:
    """Test the lock/unlock state machine."""

    @pytest.mark.asyncio
    async def test_unlock_with_correct_and_wrong_passphrase(self):
        """Test the right passphrase unlocks and a wrong one leaves the vault locked."""
        setup = KeyManager(iterations=100_000)
        metadata = await setup.setup(PASSPHRASE)

        manager = KeyManager(metadata)
        assert manager.state is KeyState.LOCKED

        with pytest.raises(InvalidPassphraseError):
            await manager.unlock("wrong")
        assert manager.state is KeyState.LOCKED

        assert await manager.unlock(PASSPHRASE) is KeyState.UNLOCKED
        assert manager.is_unlocked

    @pytest.mark.asyncio
    async def test_setup_leaves_vault_unlocked(self):
        """Test first-run setup derives and holds the key."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        metadata = await manager.setup(PASSPHRASE)

        assert manager.state is KeyState.UNLOCKED
        assert metadata.iterations == FAST_ITERATIONS
        assert len(metadata.salt) == 16

    @pytest.mark.asyncio
    async def test_setup_rejects_short_passphrase(self):
        """Test passphrases under 12 characters are refused."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        with pytest.raises(ValueError, match="at least 12"):
            await manager.setup("too-short")
        assert manager.metadata is None

    @pytest.mark.asyncio
    async def test_setup_twice_rejected(self):
        """Test an initialized vault cannot be set up again."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        await manager.setup(PASSPHRASE)
        with pytest.raises(ValueError, match="already initialized"):
            await manager.setup("another-long-passphrase")

    @pytest.mark.asyncio
    async def test_unlock_without_setup(self):
        """Test unlocking before setup reports the missing vault."""
        with pytest.raises(VaultNotInitializedError):
            await KeyManager().unlock(PASSPHRASE)

    @pytest.mark.asyncio
    async def test_key_session_requires_unlock(self):
        """Test sessions fail while locked."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        await manager.setup(PASSPHRASE)
        await manager.lock()

        with pytest.raises(VaultLockedError):
            async with manager.key_session():
                pass

    @pytest.mark.asyncio
    async def test_lock_waits_for_inflight_session(self):
        """Test lock() drops the key only after running sessions finish."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        await manager.setup(PASSPHRASE)

        entered = asyncio.Event()
        release = asyncio.Event()

        async def hold_session():
            async with manager.key_session() as key:
                entered.set()
                await release.wait()
                return key.material

        holder = asyncio.create_task(hold_session())
        await entered.wait()

        locker = asyncio.create_task(manager.lock())
        await asyncio.sleep(0.01)
        assert not locker.done()
        assert manager.is_unlocked

        release.set()
        material, _ = await asyncio.gather(holder, locker)
        assert len(material) == KEY_SIZE
        assert manager.state is KeyState.LOCKED


class TestChangePassphrase:
    """Test replacing the passphrase."""

    NEW_PASSPHRASE = "battery-staple-42"

    @pytest.mark.asyncio
    async def test_new_salt_and_tag(self):
        """Test the new passphrase unlocks and the old one no longer does."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        old = await manager.setup(PASSPHRASE)
        async with manager.key_session() as old_key:
            pass

        new = await manager.change_passphrase(PASSPHRASE, self.NEW_PASSPHRASE)

        assert new.salt != old.salt
        assert new.verification_tag != old.verification_tag
        assert new.created_at == old.created_at
        async with manager.key_session() as new_key:
            assert new_key.material != old_key.material

        restored = KeyManager(new)
        with pytest.raises(InvalidPassphraseError):
            await restored.unlock(PASSPHRASE)
        assert await restored.unlock(self.NEW_PASSPHRASE) is KeyState.UNLOCKED

    @pytest.mark.asyncio
    async def test_reseal_receives_both_keys(self):
        """Test the reseal callback gets the old key, the new key and the new metadata."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        await manager.setup(PASSPHRASE)
        async with manager.key_session() as old_key:
            pass
        seen = []

        async def reseal(previous, current, metadata):
            seen.append((previous.material, current.material, metadata))

        metadata = await manager.change_passphrase(PASSPHRASE, self.NEW_PASSPHRASE, reseal)

        assert len(seen) == 1
        assert seen[0][0] == old_key.material
        assert seen[0][2] == metadata

    @pytest.mark.asyncio
    async def test_failed_reseal_keeps_old_passphrase(self):
        """Test nothing changes when the reseal callback raises."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        original = await manager.setup(PASSPHRASE)

        async def reseal(previous, current, metadata):
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            await manager.change_passphrase(PASSPHRASE, self.NEW_PASSPHRASE, reseal)

        assert manager.metadata == original
        await manager.lock()
        assert await manager.unlock(PASSPHRASE) is KeyState.UNLOCKED

    @pytest.mark.asyncio
    async def test_locked_vault_stays_locked(self):
        """Test a change on a locked vault does not unlock it."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        await manager.setup(PASSPHRASE)
        await manager.lock()

        await manager.change_passphrase(PASSPHRASE, self.NEW_PASSPHRASE)

        assert manager.state is KeyState.LOCKED
        assert await manager.unlock(self.NEW_PASSPHRASE) is KeyState.UNLOCKED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("old, new, error", [
        ("wrong-passphrase", "battery-staple-42", InvalidPassphraseError),
        (PASSPHRASE, "short", ValueError),
        (PASSPHRASE, PASSPHRASE, ValueError),
    ])
    async def test_invalid_changes_rejected(self, old, new, error):
        """Test a wrong old passphrase, a weak new one or no change is refused."""
        manager = KeyManager(iterations=FAST_ITERATIONS)
        original = await manager.setup(PASSPHRASE)

        with pytest.raises(error):
            await manager.change_passphrase(old, new)
        assert manager.metadata == original

    @pytest.mark.asyncio
    async def test_change_before_setup(self):
        """Test changing the passphrase of an uninitialized vault is refused."""
        with pytest.raises(VaultNotInitializedError):
            await KeyManager().change_passphrase(PASSPHRASE, self.NEW_PASSPHRASE)
