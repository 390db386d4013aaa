# Tests for the encrypted vault file
#
# Coverage:
#   - Empty vault lifecycle, first save, reopen
#   - Current-format unlock, wrong password, corrupt/truncated files
#   - Legacy (fixed-salt) vault migration to the salted format, including
#     hand-assembled files in the older headerless registry layout
#   - Upsert / remove semantics, rollback when a credential cannot be stored
#   - File permissions, failed saves, key wiping on lock

import os
import stat
import struct
import threading

import pytest

from rauthy import codec, config, storage
from rauthy.credential import Credential
from rauthy.crypto import CryptoManager
from rauthy.exceptions import (
    AuthenticationError,
    DecodeError,
    EncodeError,
    ParseError,
    VaultIOError,
    VaultError,
    VaultLockedError,
)
from rauthy.storage import (
    UNLOCK_STRATEGIES,
    CurrentFormatStrategy,
    LegacyFormatStrategy,
    Vault,
    VaultFormat,
    VaultState,
)
from rauthy.totp import current_token

from .conftest import PASSWORD, legacy_payload


def _vault_file(vault_dir):
    return os.path.join(vault_dir, config.STORAGE_FILE)


def _read(vault_dir):
    with open(_vault_file(vault_dir), 'rb') as f:
        return f.read()


def _write_legacy_vault(vault_dir, registry, password=PASSWORD):
    crypto = CryptoManager()
    data = crypto.encrypt(legacy_payload(registry), crypto.derive_key(password))
    with open(_vault_file(vault_dir), 'wb') as f:
        f.write(data)
    return data


class TestEmptyVault:
    def test_no_file_starts_empty(self, vault_dir):
        vault = Vault(vault_dir)
        assert vault.state is VaultState.UNINITIALIZED
        assert vault.unlock(PASSWORD) == {}
        assert vault.state is VaultState.EMPTY
        assert vault.format is VaultFormat.CURRENT
        assert vault.is_unlocked()
        assert not vault.file_exists()

    def test_first_save_writes_current_format(self, vault, vault_dir, github):
        vault.add_credential(github)
        assert vault.state is VaultState.UNLOCKED
        data = _read(vault_dir)
        crypto = CryptoManager()
        salt = data[-config.SALT_SIZE:]
        plaintext = crypto.decrypt(data[:-config.SALT_SIZE], crypto.derive_key(PASSWORD, salt))
        assert codec.decode(plaintext) == {github.id: github}

    def test_save_empty_registry(self, vault, vault_dir):
        vault.save()
        reopened = Vault.open(vault_dir, PASSWORD)
        assert reopened.credentials() == {}
        assert reopened.state is VaultState.UNLOCKED

    def test_salt_is_not_the_legacy_salt(self, vault, vault_dir, github):
        vault.add_credential(github)
        assert _read(vault_dir)[-config.SALT_SIZE:] != config.LEGACY_SALT[:config.SALT_SIZE]


class TestUnlock:
    def test_reopen_with_correct_password(self, vault, vault_dir, github):
        vault.add_credential(github)
        vault.close()
        reopened = Vault(vault_dir)
        assert reopened.unlock(PASSWORD) == {github.id: github}
        assert reopened.format is VaultFormat.CURRENT
        assert not reopened.migrated

    def test_current_format_is_not_rewritten_on_unlock(self, vault, vault_dir, github):
        vault.add_credential(github)
        before = _read(vault_dir)
        Vault.open(vault_dir, PASSWORD)
        assert _read(vault_dir) == before

    def test_wrong_password(self, vault, vault_dir, github):
        vault.add_credential(github)
        other = Vault(vault_dir)
        with pytest.raises(AuthenticationError):
            other.unlock("wrong password")
        assert other.state is VaultState.FAILED
        assert not other.is_unlocked()
        with pytest.raises(VaultLockedError):
            other.credentials()

    def test_corrupt_file_is_indistinguishable_from_wrong_password(self, vault, vault_dir, github):
        vault.add_credential(github)
        data = bytearray(_read(vault_dir))
        data[20] ^= 0xFF
        with open(_vault_file(vault_dir), 'wb') as f:
            f.write(bytes(data))
        with pytest.raises(AuthenticationError) as corrupt:
            Vault.open(vault_dir, PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            Vault.open(vault_dir, "wrong password")
        assert str(corrupt.value) == str(wrong.value)

    @pytest.mark.parametrize("content", [b"", b"\x00" * 5, os.urandom(100)])
    def test_garbage_file(self, vault_dir, content):
        with open(_vault_file(vault_dir), 'wb') as f:
            f.write(content)
        with pytest.raises(AuthenticationError):
            Vault.open(vault_dir, PASSWORD)

    def test_decode_error_after_successful_decryption(self, vault_dir):
        crypto = CryptoManager()
        salt = crypto.generate_salt()
        data = crypto.encrypt(b"not a registry", crypto.derive_key(PASSWORD, salt)) + salt
        with open(_vault_file(vault_dir), 'wb') as f:
            f.write(data)
        vault = Vault(vault_dir)
        with pytest.raises(DecodeError):
            vault.unlock(PASSWORD)
        assert vault.state is VaultState.FAILED

    def test_unreadable_path(self, vault_dir):
        os.mkdir(_vault_file(vault_dir))
        with pytest.raises(VaultIOError):
            Vault.open(vault_dir, PASSWORD)

    def test_bytearray_password_is_wiped(self, vault_dir):
        secret = bytearray(PASSWORD.encode())
        vault = Vault(vault_dir)
        vault.unlock(secret)
        assert secret == bytearray(len(PASSWORD.encode()))
        assert vault.is_unlocked()

    def test_strategies_are_ordered_current_first(self):
        assert isinstance(UNLOCK_STRATEGIES[0], CurrentFormatStrategy)
        assert isinstance(UNLOCK_STRATEGIES[1], LegacyFormatStrategy)


class TestLegacyMigration:
    def test_legacy_vault_is_migrated(self, vault_dir, github):
        legacy = _write_legacy_vault(vault_dir, {github.id: github})
        vault = Vault(vault_dir)
        assert vault.unlock(PASSWORD) == {github.id: github}
        assert vault.migrated
        assert vault.format is VaultFormat.CURRENT
        assert vault.state is VaultState.UNLOCKED

        data = _read(vault_dir)
        assert data != legacy

        crypto = CryptoManager()
        salt = data[-config.SALT_SIZE:]
        key = crypto.derive_key(PASSWORD, salt)
        assert codec.decode(crypto.decrypt(data[:-config.SALT_SIZE], key)) == {github.id: github}

    def test_old_fixed_salt_key_no_longer_opens_file(self, vault_dir, github):
        _write_legacy_vault(vault_dir, {github.id: github})
        Vault.open(vault_dir, PASSWORD)
        data = _read(vault_dir)
        crypto = CryptoManager()
        legacy_key = crypto.derive_key(PASSWORD)
        with pytest.raises(AuthenticationError):
            crypto.decrypt(data, legacy_key)
        with pytest.raises(AuthenticationError):
            crypto.decrypt(data[:-config.SALT_SIZE], legacy_key)

    def test_migrated_vault_reopens_without_migration(self, vault_dir, github):
        _write_legacy_vault(vault_dir, {github.id: github})
        Vault.open(vault_dir, PASSWORD).close()
        vault = Vault.open(vault_dir, PASSWORD)
        assert not vault.migrated
        assert vault.format is VaultFormat.CURRENT
        assert vault.credentials() == {github.id: github}

    def test_empty_legacy_vault(self, vault_dir):
        _write_legacy_vault(vault_dir, {})
        vault = Vault.open(vault_dir, PASSWORD)
        assert vault.migrated
        assert vault.credentials() == {}

    def test_legacy_vault_wrong_password(self, vault_dir, github):
        legacy = _write_legacy_vault(vault_dir, {github.id: github})
        with pytest.raises(AuthenticationError):
            Vault.open(vault_dir, "wrong password")
        assert _read(vault_dir) == legacy

    def test_failed_migration_leaves_legacy_file(self, vault_dir, github, monkeypatch):
        legacy = _write_legacy_vault(vault_dir, {github.id: github})

        def fail(src, dst):
            raise PermissionError("read-only")

        monkeypatch.setattr(os, "replace", fail)
        vault = Vault(vault_dir)
        with pytest.raises(VaultIOError):
            vault.unlock(PASSWORD)
        assert not vault.is_unlocked()
        assert vault.state is VaultState.FAILED
        assert _read(vault_dir) == legacy

    def test_file_written_by_older_release(self, vault_dir):
        payload = (
            struct.pack('<Q', 1)
            + struct.pack('<Q', 11) + b"GitHubalice"
            + struct.pack('<Q', 11) + b"GitHubalice"
            + struct.pack('<Q', 6) + b"GitHub"
            + struct.pack('<Q', 34) + b"KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ"
            + struct.pack('<Q', 5) + b"alice"
            + struct.pack('<I', 0)
            + struct.pack('<Q', 6)
            + struct.pack('<Q', 30)
            + struct.pack('<Q', 24) + b"https://icons/github.png"
        )
        crypto = CryptoManager()
        with open(_vault_file(vault_dir), 'wb') as f:
            f.write(crypto.encrypt(payload, crypto.derive_key(PASSWORD)))

        vault = Vault.open(vault_dir, PASSWORD)
        assert vault.migrated
        expected = Credential(
            issuer="GitHub",
            name="alice",
            secret="KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ",
            icon="https://icons/github.png",
        )
        assert vault.credentials() == {"GitHubalice": expected}
        assert vault.current_token("GitHubalice", 59).token == current_token(expected, 59).token

        data = _read(vault_dir)
        key = crypto.derive_key(PASSWORD, data[-config.SALT_SIZE:])
        assert codec.decode(crypto.decrypt(data[:-config.SALT_SIZE], key)) == {"GitHubalice": expected}

    def test_salted_file_in_older_layout_opens(self, vault_dir, github, rfc_credential):
        crypto = CryptoManager()
        salt = crypto.generate_salt()
        data = crypto.encrypt(legacy_payload({github.id: github}), crypto.derive_key(PASSWORD, salt)) + salt
        with open(_vault_file(vault_dir), 'wb') as f:
            f.write(data)

        vault = Vault.open(vault_dir, PASSWORD)
        assert not vault.migrated
        assert vault.format is VaultFormat.CURRENT
        assert vault.credentials() == {github.id: github}
        assert _read(vault_dir) == data

        vault.add_credential(rfc_credential)
        rewritten = _read(vault_dir)
        key = crypto.derive_key(PASSWORD, rewritten[-config.SALT_SIZE:])
        assert codec.decode(crypto.decrypt(rewritten[:-config.SALT_SIZE], key)) == {
            github.id: github,
            rfc_credential.id: rfc_credential,
        }

    def test_legacy_file_with_malformed_payload(self, vault_dir):
        crypto = CryptoManager()
        with open(_vault_file(vault_dir), 'wb') as f:
            f.write(crypto.encrypt(b"\x05" + b"\x00" * 7, crypto.derive_key(PASSWORD)))
        vault = Vault(vault_dir)
        with pytest.raises(DecodeError):
            vault.unlock(PASSWORD)
        assert vault.state is VaultState.FAILED


class TestRegistry:
    def test_add_then_remove_restores_size(self, vault, github, rfc_credential):
        vault.add_credential(rfc_credential)
        size = len(vault.credentials())
        vault.add_credential(github)
        assert len(vault.credentials()) == size + 1
        assert vault.remove_credential(github.id) is True
        assert len(vault.credentials()) == size

    def test_remove_missing_does_not_touch_file(self, vault, vault_dir, github):
        vault.add_credential(github)
        before = _read(vault_dir)
        mtime = os.stat(_vault_file(vault_dir)).st_mtime_ns
        assert vault.remove_credential("nope") is False
        assert _read(vault_dir) == before
        assert os.stat(_vault_file(vault_dir)).st_mtime_ns == mtime

    def test_remove_missing_on_empty_vault_creates_no_file(self, vault, vault_dir):
        assert vault.remove_credential("nope") is False
        assert not os.path.exists(_vault_file(vault_dir))

    def test_add_with_same_id_overwrites(self, vault, github):
        vault.add_credential(github)
        replacement = Credential(issuer="GitHub", name="alice@example.com", secret="JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP", digits=8)
        vault.update_credential(replacement)
        credentials = vault.credentials()
        assert len(credentials) == 1
        assert credentials[github.id].digits == 8

    def test_mutations_are_persisted(self, vault, vault_dir, github, rfc_credential):
        vault.add_credential(github)
        vault.add_credential(rfc_credential)
        vault.remove_credential(github.id)
        assert Vault.open(vault_dir, PASSWORD).credentials() == {rfc_credential.id: rfc_credential}

    def test_every_save_uses_a_fresh_nonce(self, vault, vault_dir, github):
        vault.add_credential(github)
        first = _read(vault_dir)
        vault.save()
        second = _read(vault_dir)
        assert first[:config.NONCE_SIZE] != second[:config.NONCE_SIZE]
        assert first[-config.SALT_SIZE:] == second[-config.SALT_SIZE:]

    def test_credentials_returns_copy(self, vault, github):
        vault.add_credential(github)
        vault.credentials().clear()
        assert len(vault.credentials()) == 1

    def test_add_from_uri(self, vault):
        credential = vault.add_from_uri(
            "otpauth://totp/GitHub:alice@example.com?secret=KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ&issuer=GitHub"
        )
        assert vault.get_credential("GitHubalice@example.com") == credential

    def test_add_from_invalid_uri(self, vault):
        with pytest.raises(ParseError):
            vault.add_from_uri("otpauth://totp/GitHub:alice")
        assert vault.credentials() == {}

    @pytest.mark.parametrize("params", ["&digits=4294967296", "&digits=11", "&period=18446744073709551616"])
    def test_out_of_range_uri_leaves_vault_usable(self, vault, vault_dir, github, rfc_credential, params):
        vault.add_credential(github)
        with pytest.raises(ParseError):
            vault.add_from_uri("otpauth://totp/X:y?secret=KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ" + params)
        assert vault.credentials() == {github.id: github}
        vault.add_credential(rfc_credential)
        assert Vault.open(vault_dir, PASSWORD).credentials() == {
            github.id: github,
            rfc_credential.id: rfc_credential,
        }

    def test_unstorable_credential_is_rolled_back(self, vault, vault_dir, github, rfc_credential):
        vault.add_credential(github)
        before = _read(vault_dir)
        unstorable = Credential(issuer="X", name="y", secret="KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ", digits=2 ** 32)
        with pytest.raises(EncodeError):
            vault.add_credential(unstorable)
        assert vault.credentials() == {github.id: github}
        assert _read(vault_dir) == before

        vault.add_credential(rfc_credential)
        assert vault.remove_credential(github.id) is True
        assert Vault.open(vault_dir, PASSWORD).credentials() == {rfc_credential.id: rfc_credential}

    def test_unexpected_save_error_still_rolls_back(self, vault_dir, github, rfc_credential, monkeypatch):
        vault = Vault.open(vault_dir, PASSWORD, icon_lookup=lambda issuer: "https://icons/new.png")
        vault.add_credential(github)

        def boom(registry):
            raise RuntimeError("encoder bug")

        monkeypatch.setattr(codec, "encode", boom)
        with pytest.raises(RuntimeError):
            vault.add_credential(rfc_credential)
        with pytest.raises(RuntimeError):
            vault.update_credential(Credential(issuer="GitHub", name="alice@example.com", secret="JBSWY3DPEHPK3PXP"))
        with pytest.raises(RuntimeError):
            vault.remove_credential(github.id)
        with pytest.raises(RuntimeError):
            vault.refresh_icon(github.id)
        assert vault.credentials() == {github.id: github}

    def test_tokens(self, vault, rfc_credential):
        vault.add_credential(rfc_credential)
        assert vault.services_tokens(59).tokens[rfc_credential.id].token == "94287082"
        assert vault.current_token(rfc_credential.id, 59).token == "94287082"
        with pytest.raises(KeyError):
            vault.current_token("missing", 59)


class TestIcons:
    def test_icon_lookup_populates_icon(self, vault_dir):
        calls = []

        def lookup(issuer):
            calls.append(issuer)
            return "https://cdn.example.com/github.png"

        vault = Vault.open(vault_dir, PASSWORD, icon_lookup=lookup)
        credential = vault.add_from_uri(
            "otpauth://totp/GitHub:alice@example.com?secret=KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ"
        )
        assert calls == ["GitHub"]
        assert credential.icon == "https://cdn.example.com/github.png"

    def test_failing_icon_lookup_never_blocks(self, vault_dir):
        def lookup(issuer):
            raise RuntimeError("network down")

        vault = Vault.open(vault_dir, PASSWORD, icon_lookup=lookup)
        credential = vault.add_from_uri(
            "otpauth://totp/GitHub:alice@example.com?secret=KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ"
        )
        assert credential.icon == ""
        assert vault.credentials() == {credential.id: credential}

    def test_refresh_icon(self, vault_dir, github):
        vault = Vault.open(vault_dir, PASSWORD, icon_lookup=lambda issuer: f"https://icons/{issuer}.png")
        vault.add_credential(github)
        assert vault.refresh_icon(github.id) == "https://icons/GitHub.png"
        assert Vault.open(vault_dir, PASSWORD).credentials()[github.id].icon == "https://icons/GitHub.png"
        with pytest.raises(KeyError):
            vault.refresh_icon("missing")


class TestSaving:
    @pytest.mark.skipif(os.name != 'posix', reason="POSIX permission bits")
    def test_owner_only_permissions(self, vault, vault_dir, github):
        vault.add_credential(github)
        mode = stat.S_IMODE(os.stat(_vault_file(vault_dir)).st_mode)
        assert mode == 0o600

    def test_no_temp_file_left_behind(self, vault, vault_dir, github):
        vault.add_credential(github)
        assert os.listdir(vault_dir) == [config.STORAGE_FILE]

    def test_failed_save_is_reported_and_rolled_back(self, vault, vault_dir, github, rfc_credential, monkeypatch):
        vault.add_credential(github)
        before = _read(vault_dir)

        def fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail)
        with pytest.raises(VaultIOError):
            vault.add_credential(rfc_credential)
        with pytest.raises(VaultIOError):
            vault.remove_credential(github.id)
        assert vault.credentials() == {github.id: github}
        assert _read(vault_dir) == before
        assert not os.path.exists(_vault_file(vault_dir) + config.TEMP_FILE_SUFFIX)

    def test_failed_overwrite_restores_previous_value(self, vault, github, monkeypatch):
        vault.add_credential(github)
        def fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail)
        replacement = Credential(issuer="GitHub", name="alice@example.com", secret="JBSWY3DPEHPK3PXP", digits=8)
        with pytest.raises(VaultIOError):
            vault.update_credential(replacement)
        assert vault.credentials()[github.id].digits == 6

    def test_permission_failure_fails_the_save(self, vault, vault_dir, github, rfc_credential, monkeypatch):
        vault.add_credential(github)
        before = _read(vault_dir)

        def refuse(path):
            raise VaultIOError(f"Can't restrict access to {path}: denied")

        monkeypatch.setattr(storage, "set_owner_only_permissions", refuse)
        with pytest.raises(VaultIOError):
            vault.add_credential(rfc_credential)
        assert vault.credentials() == {github.id: github}
        assert _read(vault_dir) == before
        assert os.listdir(vault_dir) == [config.STORAGE_FILE]

    def test_save_requires_unlocked_vault(self, vault_dir):
        with pytest.raises(VaultLockedError):
            Vault(vault_dir).save()


class TestLocking:
    def test_lock_wipes_key_and_salt(self, vault, github):
        vault.add_credential(github)
        key = vault._key
        salt = vault._salt
        vault.lock()
        assert key == bytearray(len(key))
        assert salt == bytearray(len(salt))
        assert not vault.is_unlocked()
        assert vault.state is VaultState.UNINITIALIZED
        with pytest.raises(VaultLockedError):
            vault.credentials()
        with pytest.raises(VaultLockedError):
            vault.add_credential(github)

    def test_context_manager_closes(self, vault_dir):
        with Vault.open(vault_dir, PASSWORD) as vault:
            assert vault.is_unlocked()
        assert not vault.is_unlocked()

    def test_set_base_path_requires_locked(self, vault, tmp_path):
        with pytest.raises(VaultError):
            vault.set_base_path(str(tmp_path))
        vault.lock()
        vault.set_base_path(str(tmp_path))
        assert vault.filepath == os.path.join(str(tmp_path), config.STORAGE_FILE)

    def test_concurrent_adds_are_serialized(self, vault, vault_dir):
        def add(i):
            vault.add_credential(Credential(issuer="Issuer", name=f"user{i}", secret="JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"))

        threads = [threading.Thread(target=add, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(Vault.open(vault_dir, PASSWORD).credentials()) == 8
