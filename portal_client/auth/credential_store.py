"""
Credential storage for the Portal API Client.

This module provides the stores that hold the access/refresh token pair.
Both tokens are always serialized into one record so that a reader can never
observe half of a new pair next to half of an old one. Durable stores use the
system keyring or an encrypted file, and every read goes back to the durable
medium.
"""

import os
import json
import base64
import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from portal_shared.exceptions import CredentialStorageError, ErrorCode
from portal_shared.interfaces import ICredentialStore
from portal_shared.models import CredentialPair

logger = logging.getLogger(__name__)

CREDENTIALS_KEY = "credentials"
ENCRYPTION_KEY_NAME = "encryption_key"


def keyring_usable(service_name: str) -> bool:
    """Check that a working system keyring backend is present."""
    try:
        import keyring
        test_key = f"{service_name}_test"
        keyring.set_password(service_name, test_key, "test")
        result = keyring.get_password(service_name, test_key)
        keyring.delete_password(service_name, test_key)
        return result == "test"
    except Exception as e:
        logger.debug(f"Keyring not available: {e}")
        return False


class InMemoryCredentialStore(ICredentialStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self, pair: Optional[CredentialPair] = None):
        self._lock = threading.Lock()
        self._pair = pair

    def read(self) -> Optional[CredentialPair]:
        with self._lock:
            return self._pair

    def write(self, pair: CredentialPair) -> None:
        with self._lock:
            self._pair = pair

    def clear(self) -> None:
        with self._lock:
            self._pair = None


class KeyringCredentialStore(ICredentialStore):
    """
    Store the pair as a single system keyring entry.

    One keyring value holds both slots, so a write replaces them together.
    """

    def __init__(self, service_name: str = "portal-api-client"):
        self.service_name = service_name
        self._lock = threading.Lock()
        logger.info(f"Keyring credential store initialized (service: {service_name})")

    def read(self) -> Optional[CredentialPair]:
        try:
            import keyring
            value = keyring.get_password(self.service_name, CREDENTIALS_KEY)
            if not value:
                return None
            return CredentialPair.from_slots(json.loads(value))
        except Exception as e:
            logger.warning(f"Failed to read credentials from keyring: {e}")
            return None

    def write(self, pair: CredentialPair) -> None:
        import keyring

        value = json.dumps(pair.to_slots())
        try:
            with self._lock:
                keyring.set_password(self.service_name, CREDENTIALS_KEY, value)
        except Exception as e:
            logger.error(f"Failed to store credentials in keyring: {e}")
            raise CredentialStorageError(f"Failed to store credentials: {e}", cause=e)

        logger.debug("Credentials stored in keyring")

    def clear(self) -> None:
        import keyring
        from keyring.errors import PasswordDeleteError

        with self._lock:
            try:
                keyring.delete_password(self.service_name, CREDENTIALS_KEY)
            except PasswordDeleteError:
                # Nothing stored
                pass
            except Exception as e:
                logger.warning(f"Failed to remove credentials from keyring: {e}")


class FileCredentialStore(ICredentialStore):
    """
    Store the pair in a Fernet-encrypted file.

    Writes go to a temporary file in the same directory that is then moved
    over the record with os.replace(), so readers see either the old record
    or the new one. The encryption key is kept in the system keyring when
    available, otherwise in a 0600 key file beside the record.
    """

    def __init__(
        self,
        storage_path: str,
        service_name: str = "portal-api-client",
        use_keyring: Optional[bool] = None
    ):
        self.storage_path = Path(storage_path).expanduser()
        self.key_path = self.storage_path.with_name(self.storage_path.name + '.key')
        self.service_name = service_name
        self.keyring_available = (
            keyring_usable(service_name) if use_keyring is None else use_keyring
        )

        self._lock = threading.Lock()

        logger.info(
            f"File credential store initialized at {self.storage_path} "
            f"(keyring for key: {self.keyring_available})"
        )

    def _get_or_create_key(self) -> bytes:
        """Load the encryption key, creating it on first write."""
        stored_key = self._load_key()
        if stored_key:
            return stored_key

        key = self._generate_key()
        self._save_key(key)
        return key

    def _load_key(self) -> Optional[bytes]:
        """Load the current key from durable storage; never creates one."""
        if self.keyring_available:
            try:
                import keyring
                stored_key = keyring.get_password(self.service_name, ENCRYPTION_KEY_NAME)
                if stored_key:
                    return base64.b64decode(stored_key.encode())
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")

        if self.key_path.exists():
            return self.key_path.read_bytes().strip()

        return None

    def _generate_key(self) -> bytes:
        password = os.urandom(32)
        salt = os.urandom(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password))

    def _save_key(self, key: bytes) -> None:
        if self.keyring_available:
            try:
                import keyring
                keyring.set_password(
                    self.service_name, ENCRYPTION_KEY_NAME, base64.b64encode(key).decode()
                )
                return
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self._atomic_write(self.key_path, key)

    def _atomic_write(self, path: Path, data: bytes) -> None:
        """Write data to a sibling temp file and move it over path."""
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def read(self) -> Optional[CredentialPair]:
        if not self.storage_path.exists():
            return None

        try:
            encrypted_data = self.storage_path.read_bytes()
            key = self._load_key()
            if key is None:
                logger.warning(f"No encryption key for credential file {self.storage_path}")
                return None
            fernet = Fernet(key)
            slots = json.loads(fernet.decrypt(encrypted_data).decode())
            return CredentialPair.from_slots(slots)
        except FileNotFoundError:
            # Cleared between exists() and read_bytes()
            return None
        except InvalidToken:
            logger.warning(f"Credential file {self.storage_path} cannot be decrypted with the current key")
            return None
        except Exception as e:
            logger.warning(f"Failed to read credential file: {e}")
            return None

    def write(self, pair: CredentialPair) -> None:
        try:
            with self._lock:
                self.storage_path.parent.mkdir(parents=True, exist_ok=True)
                fernet = Fernet(self._get_or_create_key())
                encrypted_data = fernet.encrypt(json.dumps(pair.to_slots()).encode())
                self._atomic_write(self.storage_path, encrypted_data)
        except Exception as e:
            logger.error(f"Failed to store credentials: {e}")
            raise CredentialStorageError(f"Failed to store credentials: {e}", cause=e)

        logger.debug(f"Credentials stored in {self.storage_path}")

    def clear(self) -> None:
        with self._lock:
            try:
                self.storage_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove credential file: {e}")


def create_credential_store(config) -> ICredentialStore:
    """
    Build the credential store selected by configuration.

    Args:
        config: ClientConfiguration instance

    Returns:
        Credential store for the configured backend
    """
    backend = config.get_storage_backend()
    service_name = config.get_storage_service_name()

    if backend == 'memory':
        return InMemoryCredentialStore()

    if backend == 'keyring':
        if not keyring_usable(service_name):
            raise CredentialStorageError(
                "Keyring backend requested but no usable keyring is available",
                error_code=ErrorCode.STORAGE_UNAVAILABLE
            )
        return KeyringCredentialStore(service_name)

    if backend == 'auto':
        if keyring_usable(service_name):
            return KeyringCredentialStore(service_name)
        return FileCredentialStore(
            config.get_storage_path(), service_name=service_name, use_keyring=False
        )

    return FileCredentialStore(config.get_storage_path(), service_name=service_name)
