"""
Access to the stored Claude credential record.

The record is a JSON object. Only the ``claudeAiOauth`` entry is interpreted;
every other key is written back exactly as it was read.

On macOS the record lives in the login keychain and is reached through the
``security`` command. Writing deletes the old item and then adds the new one.
If the process dies between the two steps the credential is gone until the
user signs in again; nothing in the record is lost that a fresh login would
not recreate. Other platforms keep the same document in a 0600 JSON file.
"""
from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import tempfile
from typing import Any, Callable, Dict, List, Optional

from .config import CREDENTIALS_FILE, OAUTH_RECORD_KEY, SERVICE_NAME, STORE_BACKEND
from .errors import (
    NoCredentials,
    ParseFailure,
    StoreAccessDenied,
    StoreUnavailable,
    StoreWriteFailure,
)
from .models import OAuthToken

LOGGER = logging.getLogger(__name__)

# security(1) exit status for errSecItemNotFound
_ITEM_NOT_FOUND = 44

Runner = Callable[..., "subprocess.CompletedProcess[bytes]"]


def _decode_record(raw: bytes) -> Dict[str, Any]:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseFailure(f"Invalid UTF-8 in credentials: {exc}") from exc
    try:
        record = json.loads(text.strip())
    except ValueError as exc:
        raise ParseFailure(f"Failed to parse credentials: {exc}") from exc
    if not isinstance(record, dict):
        raise ParseFailure("Failed to parse credentials: top level is not an object")
    return record


def _stderr_text(proc: "subprocess.CompletedProcess[bytes]") -> str:
    err = proc.stderr or b""
    if isinstance(err, bytes):
        err = err.decode("utf-8", errors="replace")
    return err.strip()


class CredentialStore:
    """A single credential record in some secure storage backend."""

    def read_record(self) -> Dict[str, Any]:
        raise NotImplementedError

    def write_record(self, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def read_token(self) -> OAuthToken:
        return token_from_record(self.read_record())

    def write_token(self, token: OAuthToken, record: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Store ``token`` in ``record`` (read fresh when omitted) and persist it."""
        base = dict(record) if record is not None else self.read_record()
        base[OAUTH_RECORD_KEY] = token.to_dict()
        self.write_record(base)
        return base


def token_from_record(record: Dict[str, Any]) -> OAuthToken:
    oauth = record.get(OAUTH_RECORD_KEY)
    if oauth is None:
        raise NoCredentials("No OAuth token found in credentials")
    return OAuthToken.from_dict(oauth)


class KeychainStore(CredentialStore):
    def __init__(self, service: str = SERVICE_NAME, runner: Runner = subprocess.run) -> None:
        self.service = service
        self._runner = runner

    def _security(self, args: List[str]) -> "subprocess.CompletedProcess[bytes]":
        try:
            return self._runner(["security", *args], capture_output=True, check=False)
        except OSError as exc:
            raise StoreUnavailable(f"Failed to run security command: {exc}") from exc

    def read_record(self) -> Dict[str, Any]:
        proc = self._security(["find-generic-password", "-s", self.service, "-w"])
        if proc.returncode == _ITEM_NOT_FOUND:
            raise NoCredentials(f"No keychain item named '{self.service}'. Sign in to Claude Code first.")
        if proc.returncode != 0:
            raise StoreAccessDenied(f"Keychain access failed: {_stderr_text(proc)}")
        return _decode_record(proc.stdout or b"")

    def write_record(self, record: Dict[str, Any]) -> None:
        payload = json.dumps(record, separators=(",", ":"))
        try:
            deleted = self._security(["delete-generic-password", "-s", self.service])
            if deleted.returncode != 0:
                LOGGER.debug("keychain delete returned %s; treating item as absent", deleted.returncode)
        except StoreUnavailable as exc:
            LOGGER.debug("keychain delete skipped: %s", exc)

        try:
            proc = self._security(
                ["add-generic-password", "-s", self.service, "-a", "", "-w", payload, "-U"]
            )
        except StoreUnavailable as exc:
            raise StoreWriteFailure(f"Failed to update keychain: {exc}") from exc
        if proc.returncode != 0:
            raise StoreWriteFailure(f"Keychain update failed: {_stderr_text(proc)}")
        LOGGER.debug("keychain item '%s' updated", self.service)


class FileCredentialStore(CredentialStore):
    def __init__(self, path: str = CREDENTIALS_FILE) -> None:
        self.path = path

    def read_record(self) -> Dict[str, Any]:
        try:
            with open(self.path, "rb") as fp:
                raw = fp.read()
        except FileNotFoundError as exc:
            raise NoCredentials(f"No credentials file at {self.path}. Sign in to Claude Code first.") from exc
        except PermissionError as exc:
            raise StoreAccessDenied(f"Credentials file is not readable: {exc}") from exc
        except OSError as exc:
            raise StoreUnavailable(f"Unable to read credentials file: {exc}") from exc
        return _decode_record(raw)

    def write_record(self, record: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".credentials.", dir=directory)
        except OSError as exc:
            raise StoreWriteFailure(f"Unable to write credentials file: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                if hasattr(os, "fchmod"):
                    os.fchmod(fp.fileno(), 0o600)
                json.dump(record, fp)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreWriteFailure(f"Unable to write credentials file: {exc}") from exc


def open_store(backend: Optional[str] = STORE_BACKEND) -> CredentialStore:
    name = backend or ("keychain" if sys.platform == "darwin" else "file")
    if name == "keychain":
        return KeychainStore()
    if name == "file":
        return FileCredentialStore()
    raise ValueError(f"Unknown credential store backend: {name}")
