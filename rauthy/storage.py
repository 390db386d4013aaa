"""
Encrypted vault file holding the TOTP credentials.

Two on-disk formats exist:

    legacy:   nonce || ciphertext || tag             key = KDF(password, LEGACY_SALT)
    current:  nonce || ciphertext || tag || salt     key = KDF(password, salt)

Unlocking tries the formats in the order of UNLOCK_STRATEGIES. A vault read
in the legacy format is immediately rewritten in the current format with a
fresh random salt; the legacy key is never used for writing.
Legacy files also carry the older headerless registry layout, see
codec.decode_legacy.
"""

import os
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

from . import codec
from . import config
from . import vault_manager
from .credential import Credential
from .crypto import CryptoManager
from .exceptions import (
    AuthenticationError,
    VaultError,
    VaultIOError,
    VaultLockedError,
)
from .totp import TokenBatch, TotpToken, current_token, services_tokens
from .utils import set_owner_only_permissions, to_secret_buffer, wiped, zero_bytes

logger = logging.getLogger(__name__)

Password = Union[str, bytes, bytearray]
IconLookupFn = Callable[[str], str]


class VaultState(Enum):
    UNINITIALIZED = "uninitialized"
    EMPTY = "empty"
    UNLOCKED = "unlocked"
    MIGRATING = "migrating"
    FAILED = "failed"


class VaultFormat(Enum):
    LEGACY = "legacy"
    CURRENT = "current"


@dataclass
class UnlockResult:
    """What a successful unlock strategy hands back to the vault."""
    credentials: Dict[str, Credential]
    key: bytearray
    salt: Optional[bytearray]
    format: VaultFormat


class UnlockStrategy:
    """Detects one on-disk format and decrypts it."""

    format: VaultFormat

    def detect(self, data: bytes) -> bool:
        raise NotImplementedError

    def split(self, data: bytes) -> Tuple[bytes, Optional[bytes]]:
        """Return (sealed blob, salt or None for the legacy salt)."""
        raise NotImplementedError

    def decode(self, plaintext: bytes) -> Dict[str, Credential]:
        raise NotImplementedError

    def unlock(self, data: bytes, password: bytearray, crypto: CryptoManager) -> UnlockResult:
        """
        Raises:
            AuthenticationError: If the data does not decrypt under this format
            DecodeError: If it decrypts but the registry is malformed
        """
        blob, salt = self.split(data)
        key = bytearray(crypto.derive_key(password, salt))
        try:
            plaintext = crypto.decrypt(blob, key)
            credentials = self.decode(plaintext)
        except VaultError:
            zero_bytes(key)
            raise
        return UnlockResult(
            credentials=credentials,
            key=key,
            salt=bytearray(salt) if salt is not None else None,
            format=self.format,
        )


class CurrentFormatStrategy(UnlockStrategy):
    """Ciphertext followed by the 32-byte salt it was keyed with."""

    format = VaultFormat.CURRENT

    def detect(self, data: bytes) -> bool:
        return len(data) >= config.SALT_SIZE + config.NONCE_SIZE + config.TAG_SIZE

    def split(self, data: bytes) -> Tuple[bytes, Optional[bytes]]:
        return data[:-config.SALT_SIZE], data[-config.SALT_SIZE:]

    def decode(self, plaintext: bytes) -> Dict[str, Credential]:
        # Older salted releases wrote the headerless layout too
        return codec.decode_any(plaintext)


class LegacyFormatStrategy(UnlockStrategy):
    """Whole file is ciphertext keyed with the hard-coded salt."""

    format = VaultFormat.LEGACY

    def detect(self, data: bytes) -> bool:
        return len(data) >= config.NONCE_SIZE + config.TAG_SIZE

    def split(self, data: bytes) -> Tuple[bytes, Optional[bytes]]:
        return data, None

    def decode(self, plaintext: bytes) -> Dict[str, Credential]:
        return codec.decode_legacy(plaintext)


UNLOCK_STRATEGIES: Tuple[UnlockStrategy, ...] = (
    CurrentFormatStrategy(),
    LegacyFormatStrategy(),
)


class Vault:
    """
    Handle on one encrypted vault file.

    All public methods hold the instance lock for their whole duration, so a
    single Vault can be shared between threads.
    """

    def __init__(self, base_dir: str, icon_lookup: Optional[IconLookupFn] = None,
                 strategies: Sequence[UnlockStrategy] = UNLOCK_STRATEGIES):
        """
        Args:
            base_dir: Application-private directory holding the vault file
            icon_lookup: Optional callable mapping an issuer to an icon URL
            strategies: Unlock strategies in priority order
        """
        self.filepath = vault_manager.vault_path(base_dir)
        self.crypto = CryptoManager()
        self.icon_lookup = icon_lookup
        self.strategies = tuple(strategies)
        self._lock = threading.Lock()
        self._key: Optional[bytearray] = None
        self._salt: Optional[bytearray] = None
        self._credentials: Dict[str, Credential] = {}
        self.state = VaultState.UNINITIALIZED
        self.format: Optional[VaultFormat] = None
        self.migrated = False

    @classmethod
    def open(cls, base_dir: str, password: Password, **kwargs) -> 'Vault':
        """Create a handle and unlock it in one step."""
        vault = cls(base_dir, **kwargs)
        vault.unlock(password)
        return vault

    def __enter__(self) -> 'Vault':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def set_base_path(self, base_dir: str) -> None:
        """Point a locked handle at another directory."""
        with self._lock:
            if self._key is not None:
                raise VaultError("Lock the vault before changing its location")
            self.filepath = vault_manager.vault_path(base_dir)

    def file_exists(self) -> bool:
        return os.path.isfile(self.filepath)

    def is_unlocked(self) -> bool:
        return self._key is not None

    # ------------------------------------------------------------------
    # Unlock / lock
    # ------------------------------------------------------------------

    def unlock(self, password: Password) -> Dict[str, Credential]:
        """
        Unlock the vault, migrating a legacy file to the current format.

        The password is copied into a buffer that is zeroed before this
        method returns, whatever the outcome.

        Returns:
            A copy of the credential registry

        Raises:
            AuthenticationError: Wrong password or corrupt file
            DecodeError: The file decrypted but its contents are malformed
            VaultIOError: The file could not be read, or migration could not
                be written
        """
        with self._lock:
            self._clear()
            with wiped(to_secret_buffer(password)) as secret:
                if not os.path.exists(self.filepath):
                    self._start_empty(secret)
                else:
                    try:
                        self._unlock_existing(secret)
                    except VaultError:
                        self._clear()
                        self.state = VaultState.FAILED
                        raise
            return dict(self._credentials)

    def _start_empty(self, secret: bytearray) -> None:
        salt = bytearray(self.crypto.generate_salt())
        self._key = bytearray(self.crypto.derive_key(secret, salt))
        self._salt = salt
        self._credentials = {}
        self.format = VaultFormat.CURRENT
        self.state = VaultState.EMPTY
        logger.info(f"No vault at {self.filepath}, starting empty")

    def _unlock_existing(self, secret: bytearray) -> None:
        data = self._read_file()
        result = self._run_strategies(data, secret)

        self._key = result.key
        self._salt = result.salt
        self._credentials = result.credentials
        self.format = result.format
        self.state = VaultState.UNLOCKED
        logger.info(f"Unlocked {result.format.value} vault with {len(result.credentials)} credential(s)")

        if result.format is VaultFormat.LEGACY:
            self._migrate(secret)

    def _run_strategies(self, data: bytes, secret: bytearray) -> UnlockResult:
        for strategy in self.strategies:
            if not strategy.detect(data):
                continue
            try:
                return strategy.unlock(data, secret, self.crypto)
            except AuthenticationError:
                logger.debug(f"Unlock: {strategy.format.value} format did not authenticate")
        raise AuthenticationError("Couldn't decrypt the storage file")

    def _migrate(self, secret: bytearray) -> None:
        """Re-key a legacy vault with a random salt and rewrite it."""
        self.state = VaultState.MIGRATING
        new_salt = bytearray(self.crypto.generate_salt())
        new_key = bytearray(self.crypto.derive_key(secret, new_salt))
        zero_bytes(self._key)
        self._key = new_key
        self._salt = new_salt
        self.format = VaultFormat.CURRENT
        self._save()
        self.migrated = True
        self.state = VaultState.UNLOCKED
        logger.info(f"Migrated legacy vault {self.filepath} to the salted format")

    def lock(self) -> None:
        """Lock the vault and wipe key, salt and credentials from memory."""
        with self._lock:
            self._clear()
            self.state = VaultState.UNINITIALIZED

    close = lock

    def _clear(self) -> None:
        zero_bytes(self._key)
        zero_bytes(self._salt)
        self._key = None
        self._salt = None
        self._credentials = {}
        self.format = None
        self.migrated = False

    def _require_unlocked(self) -> None:
        if self._key is None:
            raise VaultLockedError("Vault is locked")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def credentials(self) -> Dict[str, Credential]:
        """Return a copy of the credential registry."""
        with self._lock:
            self._require_unlocked()
            return dict(self._credentials)

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            self._require_unlocked()
            return self._credentials.get(credential_id)

    def add_credential(self, credential: Credential) -> Credential:
        """
        Insert or replace a credential by id and save.

        If saving fails the registry is restored and the error re-raised.
        """
        with self._lock:
            self._require_unlocked()
            previous = self._credentials.get(credential.id)
            self._credentials[credential.id] = credential
            try:
                self._save()
            except BaseException:
                if previous is None:
                    del self._credentials[credential.id]
                else:
                    self._credentials[credential.id] = previous
                raise
            return credential

    def update_credential(self, credential: Credential) -> Credential:
        """Same operation as add_credential: upsert by id."""
        return self.add_credential(credential)

    def add_from_uri(self, uri: str) -> Credential:
        """
        Parse a provisioning URI, look up its icon and store it.

        Raises:
            ParseError: If the URI is not a usable otpauth://totp/ URI
        """
        credential = Credential.from_uri(uri)
        credential.icon = self._lookup_icon(credential.issuer)
        return self.add_credential(credential)

    def remove_credential(self, credential_id: str) -> bool:
        """
        Delete a credential by id.

        Returns:
            True if it existed. The file is only rewritten in that case.
        """
        with self._lock:
            self._require_unlocked()
            previous = self._credentials.pop(credential_id, None)
            if previous is None:
                return False
            try:
                self._save()
            except BaseException:
                self._credentials[credential_id] = previous
                raise
            return True

    def refresh_icon(self, credential_id: str) -> str:
        """
        Look the icon of a stored credential up again and save it.

        Raises:
            KeyError: If no credential has this id
        """
        credential = self.get_credential(credential_id)
        if credential is None:
            raise KeyError(credential_id)
        icon = self._lookup_icon(credential.issuer)
        with self._lock:
            self._require_unlocked()
            current = self._credentials.get(credential_id)
            if current is None:
                raise KeyError(credential_id)
            self._credentials[credential_id] = replace(current, icon=icon)
            try:
                self._save()
            except BaseException:
                self._credentials[credential_id] = current
                raise
        return icon

    def _lookup_icon(self, issuer: str) -> str:
        if self.icon_lookup is None:
            return ""
        try:
            return self.icon_lookup(issuer) or ""
        except Exception as e:
            # A failed icon lookup never blocks the vault.
            logger.warning(f"Icon lookup for {issuer!r} failed: {e}")
            return ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def services_tokens(self, now: Optional[float] = None) -> TokenBatch:
        """Current codes for every credential, see totp.services_tokens."""
        with self._lock:
            self._require_unlocked()
            return services_tokens(self._credentials, now)

    def current_token(self, credential_id: str, now: Optional[float] = None) -> TotpToken:
        with self._lock:
            self._require_unlocked()
            credential = self._credentials.get(credential_id)
            if credential is None:
                raise KeyError(credential_id)
            return current_token(credential, now)

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Encrypt the registry and write it in the current format."""
        with self._lock:
            self._save()

    def _read_file(self) -> bytes:
        try:
            with open(self.filepath, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.error(f"Error reading vault file {self.filepath}: {e}")
            raise VaultIOError(f"Couldn't read vault file {self.filepath}: {e}") from e

    def _save(self) -> None:
        if self._key is None:
            raise VaultLockedError("Vault is locked")
        if not self._salt:
            raise VaultLockedError("Vault has no salt; legacy-format vaults are never written")

        plaintext = codec.encode(self._credentials)
        data = self.crypto.encrypt(plaintext, self._key) + bytes(self._salt)

        tmp_path = self.filepath + config.TEMP_FILE_SUFFIX
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, 'O_BINARY', 0), 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            set_owner_only_permissions(tmp_path)

            # Atomic replace of the previous vault
            os.replace(tmp_path, self.filepath)
        except VaultIOError as e:
            logger.error(f"Error protecting vault file {self.filepath}: {e}")
            _discard(tmp_path)
            raise
        except OSError as e:
            logger.error(f"Error saving vault file {self.filepath}: {e}", exc_info=True)
            _discard(tmp_path)
            raise VaultIOError(f"Couldn't save vault file {self.filepath}: {e}") from e

        if self.state is VaultState.EMPTY:
            self.state = VaultState.UNLOCKED
        logger.debug(f"Saved {len(self._credentials)} credential(s) to {self.filepath}")


def _discard(path: str) -> None:
    """Remove a leftover temp file, keeping the save error as the one reported."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Couldn't remove temp file {path}: {e}")
