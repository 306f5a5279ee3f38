"""
Secure token storage for the Cap Gold client.

This module provides the persistence adapters for the session token pair:
the system keyring, a Fernet-encrypted file, and process memory. Each adapter
stores one JSON record holding all four token fields; an incomplete or
unreadable record is cleared and reported as absent.
"""

import asyncio
import base64
import json
import logging
import os
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from client.auth.token_channel import TokenChannel, TokenSubscription
from shared.exceptions import ConfigurationError, ErrorCode, StorageFailure
from shared.interfaces import ITokenStorage
from shared.models import TokenPair

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "cap-gold-client"
SESSION_RECORD_KEY = "session_tokens"
ENCRYPTION_KEY_NAME = "encryption_key"


def check_keyring_availability(service_name: str = DEFAULT_SERVICE_NAME) -> bool:
    """Check if the system keyring is usable."""
    try:
        test_key = f"{service_name}_test"
        keyring.set_password(service_name, test_key, "test")
        result = keyring.get_password(service_name, test_key)
        keyring.delete_password(service_name, test_key)
        return result == "test"
    except Exception as e:
        logger.debug(f"Keyring not available: {e}")
        return False


def default_token_path() -> Path:
    """Path for encrypted file storage under the XDG config directory."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        config_dir = Path(xdg_config) / 'cap-gold'
    else:
        config_dir = Path.home() / '.config' / 'cap-gold'
    return config_dir / 'session_tokens.enc'


class BaseTokenStorage(ITokenStorage):
    """
    Common save/load/clear/observe logic.

    Subclasses implement the three blocking record operations; they run in a
    worker thread so disk and keyring I/O never block the event loop.
    """

    blocking_io = True

    def __init__(self):
        self._channel = TokenChannel()
        self._primed = False

    # Record operations implemented by subclasses

    def _write_record(self, data: str) -> None:
        raise NotImplementedError

    def _read_record(self) -> Optional[str]:
        raise NotImplementedError

    def _delete_record(self) -> None:
        raise NotImplementedError

    async def _run(self, func, *args):
        if self.blocking_io:
            return await asyncio.to_thread(func, *args)
        return func(*args)

    @staticmethod
    def _parse(raw: str) -> Optional[TokenPair]:
        try:
            return TokenPair.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return None

    async def save(self, pair: TokenPair) -> None:
        data = json.dumps(pair.to_dict())
        try:
            await self._run(self._write_record, data)
        except StorageFailure:
            raise
        except Exception as e:
            raise StorageFailure(f"Failed to save tokens: {e}", ErrorCode.STORAGE_WRITE_FAILED, cause=e)

        self._primed = True
        self._channel.publish(pair)
        logger.debug(f"Stored session tokens for user {pair.user_id}")

    async def load(self) -> Optional[TokenPair]:
        try:
            raw = await self._run(self._read_record)
        except StorageFailure:
            raise
        except Exception as e:
            raise StorageFailure(f"Failed to read tokens: {e}", ErrorCode.STORAGE_READ_FAILED, cause=e)

        if raw is None:
            pair = None
        else:
            pair = self._parse(raw)
            if pair is None:
                logger.warning("Discarding malformed stored token record")
                await self.clear()
                return None

        self._primed = True
        self._channel.publish(pair)
        return pair

    async def clear(self) -> None:
        try:
            await self._run(self._delete_record)
        except StorageFailure:
            raise
        except Exception as e:
            raise StorageFailure(f"Failed to clear tokens: {e}", ErrorCode.STORAGE_WRITE_FAILED, cause=e)

        self._primed = True
        self._channel.publish(None)
        logger.debug("Cleared stored session tokens")

    def observe(self) -> TokenSubscription:
        if not self._primed:
            try:
                raw = self._read_record()
                self._channel.publish(self._parse(raw) if raw is not None else None)
            except Exception as e:
                logger.warning(f"Could not read stored tokens for observer: {e}")
            self._primed = True
        return self._channel.subscribe()


class KeyringTokenStorage(BaseTokenStorage):
    """Stores the token record in the system keyring."""

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        logger.info(f"Token storage initialized (keyring service: {service_name})")

    def _write_record(self, data: str) -> None:
        try:
            keyring.set_password(self.service_name, SESSION_RECORD_KEY, data)
        except KeyringError as e:
            raise StorageFailure(f"Keyring write failed: {e}", ErrorCode.STORAGE_WRITE_FAILED, cause=e)

    def _read_record(self) -> Optional[str]:
        try:
            return keyring.get_password(self.service_name, SESSION_RECORD_KEY)
        except KeyringError as e:
            raise StorageFailure(f"Keyring read failed: {e}", ErrorCode.STORAGE_READ_FAILED, cause=e)

    def _delete_record(self) -> None:
        try:
            keyring.delete_password(self.service_name, SESSION_RECORD_KEY)
        except PasswordDeleteError:
            # Nothing stored
            pass
        except KeyringError as e:
            raise StorageFailure(f"Keyring delete failed: {e}", ErrorCode.STORAGE_WRITE_FAILED, cause=e)


class EncryptedFileTokenStorage(BaseTokenStorage):
    """
    Stores the token record in a Fernet-encrypted file readable only by the owner.

    The encryption key is kept in the keyring when available, otherwise in a
    0600 key file next to the token file.
    """

    def __init__(self, path: Optional[Path] = None, service_name: str = DEFAULT_SERVICE_NAME,
                 use_keyring: Optional[bool] = None):
        super().__init__()
        self.storage_path = Path(path) if path else default_token_path()
        self.key_path = self.storage_path.with_suffix('.key')
        self.service_name = service_name
        self.keyring_available = (
            check_keyring_availability(service_name) if use_keyring is None else use_keyring
        )
        self._encryption_key: Optional[bytes] = None
        logger.info(f"Token storage initialized (file: {self.storage_path}, "
                    f"key in keyring: {self.keyring_available})")

    def _get_encryption_key(self) -> bytes:
        """Get or create the encryption key."""
        if self._encryption_key:
            return self._encryption_key

        if self.keyring_available:
            try:
                stored_key = keyring.get_password(self.service_name, ENCRYPTION_KEY_NAME)
                if stored_key:
                    self._encryption_key = base64.b64decode(stored_key.encode())
                    return self._encryption_key
            except KeyringError as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")
        elif self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        password = os.urandom(32)
        salt = os.urandom(16)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password))

        stored = False
        if self.keyring_available:
            try:
                keyring.set_password(self.service_name, ENCRYPTION_KEY_NAME, base64.b64encode(key).decode())
                stored = True
            except KeyringError as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")
        if not stored:
            self._write_private(self.key_path, key)

        self._encryption_key = key
        return key

    @staticmethod
    def _write_private(path: Path, data: bytes) -> None:
        """Write ``data`` atomically with owner-only permissions."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + '.tmp')
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)

    def _write_record(self, data: str) -> None:
        fernet = Fernet(self._get_encryption_key())
        self._write_private(self.storage_path, fernet.encrypt(data.encode()))

    def _read_record(self) -> Optional[str]:
        if not self.storage_path.exists():
            return None
        encrypted_data = self.storage_path.read_bytes()
        try:
            return Fernet(self._get_encryption_key()).decrypt(encrypted_data).decode()
        except InvalidToken:
            logger.warning(f"Token file {self.storage_path} could not be decrypted")
            return ""

    def _delete_record(self) -> None:
        if self.storage_path.exists():
            self.storage_path.unlink()


class MemoryTokenStorage(BaseTokenStorage):
    """Process-lifetime storage. Nothing survives a restart."""

    blocking_io = False

    def __init__(self, initial: Optional[TokenPair] = None):
        super().__init__()
        self._record: Optional[str] = json.dumps(initial.to_dict()) if initial else None

    def _write_record(self, data: str) -> None:
        self._record = data

    def _read_record(self) -> Optional[str]:
        return self._record

    def _delete_record(self) -> None:
        self._record = None


def create_token_storage(
    backend: str = "auto",
    service_name: str = DEFAULT_SERVICE_NAME,
    token_file: Optional[str] = None
) -> ITokenStorage:
    """
    Create the persistence adapter for the configured backend.

    Args:
        backend: One of ``auto``, ``keyring``, ``file`` or ``memory``
        service_name: Keyring service name
        token_file: Path for the encrypted file backend

    Returns:
        Token storage adapter
    """
    backend = (backend or "auto").lower()

    if backend == "memory":
        return MemoryTokenStorage()
    if backend == "keyring":
        return KeyringTokenStorage(service_name)
    if backend == "file":
        return EncryptedFileTokenStorage(Path(token_file) if token_file else None, service_name)
    if backend == "auto":
        if check_keyring_availability(service_name):
            return KeyringTokenStorage(service_name)
        logger.info("System keyring unavailable, using encrypted file storage")
        return EncryptedFileTokenStorage(Path(token_file) if token_file else None, service_name,
                                         use_keyring=False)

    raise ConfigurationError(
        f"Unknown token storage backend: {backend}",
        ErrorCode.CONFIG_INVALID_VALUE,
        config_key="auth.token_storage"
    )
