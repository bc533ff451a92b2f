from __future__ import annotations

import logging
import os
import sys

import keyring
import keyring.errors
import pytest
from keyring.backend import KeyringBackend

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from totp_store import EntryManager, NameIndex, SecretStore  # noqa: E402


class MemoryKeyring(KeyringBackend):
    """Keyring backend holding passwords in a dict.

    Names listed in `broken` fail every operation with a generic keyring error.
    """

    priority = 1

    def __init__(self):
        super().__init__()
        self.entries = {}
        self.broken = set()

    def _check(self, username):
        if username in self.broken:
            raise keyring.errors.KeyringError(f"backend unavailable for {username}")

    def get_password(self, service, username):
        self._check(username)
        return self.entries.get((service, username))

    def set_password(self, service, username, password):
        self._check(username)
        self.entries[(service, username)] = password

    def delete_password(self, service, username):
        self._check(username)
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise keyring.errors.PasswordDeleteError("Password not found")


@pytest.fixture
def backend(monkeypatch):
    memory = MemoryKeyring()
    monkeypatch.setattr(keyring, "get_keyring", lambda: memory)
    return memory


@pytest.fixture
def index_path(tmp_path):
    return tmp_path / "totp.json"


@pytest.fixture
def store(backend):
    return SecretStore("totp-test", backend=backend)


@pytest.fixture
def index(index_path):
    return NameIndex(index_path)


@pytest.fixture
def manager(store, index):
    return EntryManager(store, index)


@pytest.fixture(autouse=True)
def quiet_logging():
    yield
    logger = logging.getLogger("totp")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
