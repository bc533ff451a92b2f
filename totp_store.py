"""
TOTP store - secrets in the system keyring, names in a local index

The keyring keeps the secrets but cannot enumerate them, so a small JSON
file next to it records which names were registered. The EntryManager
keeps the two in step: keyring first on add, keyring then index on delete,
and listing prunes index names whose keyring entry has gone away.
"""

import base64
import binascii
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import keyring
import keyring.errors

logger = logging.getLogger("totp.store")

DEFAULT_SERVICE = "totp"
DEFAULT_INDEX_NAME = ".totp.json"

# Windows Credential Manager rejects passwords over 2560 bytes, the smallest
# ceiling among the common backends.
MAX_SECRET_BYTES = 2560


# ==================== Errors ====================

class TotpError(Exception):
    """Base class for every error surfaced to the command line"""


class NotFound(TotpError):
    """The name has no entry in the secret store"""

    def __init__(self, name: str):
        super().__init__(f'Given name "{name}" is not found')
        self.name = name


class InvalidFormat(TotpError):
    """The secret is empty or not Base32"""


class TooLarge(TotpError):
    """The secret exceeds what the secret store accepts"""


class IOFailure(TotpError):
    """Reading or writing the name index failed"""


class StoreFailure(TotpError):
    """The secret store failed for a reason other than a missing entry"""


class DecodeFailure(TotpError):
    """An image, QR code or otpauth URI could not be decoded"""


# ==================== Configuration ====================

def get_index_path() -> Path:
    """Get the path to the name index file"""
    override = os.environ.get("TOTP_INDEX_FILE")
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_INDEX_NAME


def get_service_name() -> str:
    """Get the keyring service all entries live under"""
    return os.environ.get("TOTP_SERVICE") or DEFAULT_SERVICE


# ==================== Secret Validation ====================

def normalize_secret(raw: str) -> str:
    """Normalize a user supplied Base32 secret and check that it decodes.

    Surrounding whitespace and interior spaces are dropped and the result
    is uppercased. The normalized text is returned, not the decoded bytes.
    """
    secret = (raw or "").strip().replace(" ", "")
    if not secret:
        raise InvalidFormat("No secret was given")
    # Unicode case mapping can change length (sharp s becomes SS); Base32 is ASCII
    if not secret.isascii():
        raise InvalidFormat("Invalid secret (expected Base32)")
    secret = secret.upper()

    # Unpadded input: the padded length must still be a valid Base32 length
    # and the stdlib decoder must accept the characters.
    padding = -len(secret) % 8
    if "=" in secret or padding in (2, 5, 7):
        raise InvalidFormat("Invalid secret (expected Base32)")
    try:
        base64.b32decode(secret + "=" * padding)
    except (binascii.Error, ValueError) as e:
        raise InvalidFormat("Invalid secret (expected Base32)") from e
    return secret


# ==================== Secret Store ====================

class SecretStore:
    """Keyring adapter keyed by entry name under a single service.

    `backend` defaults to whatever keyring resolves for this platform.
    Backends also raise their own exception types (D-Bus, Security
    framework), so any backend failure becomes StoreFailure.
    """

    def __init__(self, service: str = DEFAULT_SERVICE, backend=None,
                 max_secret_bytes: int = MAX_SECRET_BYTES):
        self.service = service
        self.max_secret_bytes = max_secret_bytes
        self._backend = backend

    @property
    def backend(self):
        if self._backend is None:
            self._backend = keyring.get_keyring()
            logger.debug("Using keyring backend %s", type(self._backend).__name__)
        return self._backend

    def set(self, name: str, secret: str) -> None:
        size = len(secret.encode("utf-8"))
        if size > self.max_secret_bytes:
            raise TooLarge(
                f"secret too large to store in system keyring "
                f"({size} bytes, limit {self.max_secret_bytes})"
            )

        logger.debug("keyring set %s/%s", self.service, name)
        try:
            self.backend.set_password(self.service, name, secret)
        except keyring.errors.PasswordSetError as e:
            message = str(e).lower()
            if "too big" in message or "too large" in message or "too long" in message:
                raise TooLarge(f"secret too large to store in system keyring: {e}") from e
            raise StoreFailure(f"Could not store \"{name}\": {e}") from e
        except Exception as e:
            raise StoreFailure(f"Could not store \"{name}\": {e}") from e

    def get(self, name: str) -> str:
        """Return the stored secret or raise NotFound"""
        logger.debug("keyring get %s/%s", self.service, name)
        try:
            secret = self.backend.get_password(self.service, name)
        except Exception as e:
            raise StoreFailure(f"Could not read \"{name}\": {e}") from e

        if secret is None:
            raise NotFound(name)
        return secret

    def delete(self, name: str) -> None:
        """Delete the entry or raise NotFound"""
        logger.debug("keyring delete %s/%s", self.service, name)
        try:
            self.backend.delete_password(self.service, name)
        except keyring.errors.PasswordDeleteError as e:
            # Backends raise the same error for a missing entry and for a
            # failed delete; the entry still being readable tells them apart.
            try:
                remaining = self.backend.get_password(self.service, name)
            except Exception:
                remaining = ""
            if remaining is None:
                raise NotFound(name) from e
            raise StoreFailure(f"Could not delete \"{name}\": {e}") from e
        except Exception as e:
            raise StoreFailure(f"Could not delete \"{name}\": {e}") from e


# ==================== Name Index ====================

@dataclass
class IndexFile:
    names: list = field(default_factory=list)


class NameIndex:
    """Local JSON ledger of registered names, used only for listing."""

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> IndexFile:
        """Load the index; a missing file is an empty index"""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                stored = json.load(f)
        except FileNotFoundError:
            return IndexFile()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise IOFailure(f"Corrupted index file {self.path}: {e}") from e
        except OSError as e:
            raise IOFailure(f"Could not read index file {self.path}: {e}") from e

        if not isinstance(stored, dict):
            raise IOFailure(f"Corrupted index file {self.path}: expected an object")
        names = stored.get("names") or []
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise IOFailure(f"Corrupted index file {self.path}: names must be strings")
        return IndexFile(names=list(names))

    def write(self, index: IndexFile) -> None:
        """Persist the index sorted, replacing the old file in one rename"""
        index.names.sort()
        payload = json.dumps({"names": index.names}, indent=2, ensure_ascii=False) + "\n"

        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix=".tmp")
        except OSError as e:
            raise IOFailure(f"Could not write index file {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise IOFailure(f"Could not write index file {self.path}: {e}") from e

        logger.debug("Wrote %d names to %s", len(index.names), self.path)

    def add(self, name: str) -> None:
        index = self.read()
        if name in index.names:
            return
        index.names.append(name)
        self.write(index)

    def remove(self, name: str) -> None:
        index = self.read()
        index.names = [n for n in index.names if n != name]
        self.write(index)


# ==================== Entry Manager ====================

class EntryManager:
    """Add, get, delete and list entries across the keyring and the index.

    There is no transaction spanning both stores. Ordering is what keeps
    them consistent:

    - add writes the keyring first, so a failed store write leaves no
      index trace. A failed index write after that leaves the entry
      gettable but unlisted until it is added again.
    - delete removes from the keyring (missing is fine) and then always
      from the index.
    - list drops index names the keyring no longer knows and saves the
      pruned index, so it writes even though it reads.
    """

    def __init__(self, store: SecretStore, index: NameIndex):
        self.store = store
        self.index = index

    def add_entry(self, name: str, secret: str) -> None:
        self.store.set(name, secret)
        self.index.add(name)
        logger.debug("Added entry %s", name)

    def get_entry(self, name: str) -> str:
        return self.store.get(name)

    def delete_entry(self, name: str) -> None:
        try:
            self.store.delete(name)
        except NotFound:
            logger.debug("Entry %s was not in the keyring", name)
        self.index.remove(name)
        logger.debug("Deleted entry %s", name)

    def list_entries(self) -> list:
        index = self.index.read()

        kept = []
        for name in index.names:
            try:
                self.store.get(name)
            except NotFound:
                logger.info("Dropping %s from the index: no keyring entry", name)
                continue
            kept.append(name)

        index.names = list(kept)
        self.index.write(index)
        return kept

    def name_exists(self, name: str) -> bool:
        """Probe the keyring only; the index is not consulted"""
        try:
            self.store.get(name)
        except NotFound:
            return False
        return True
