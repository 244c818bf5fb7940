"""Shared fakes for the credential store, the security CLI and HTTP responses."""

from __future__ import annotations

import copy
import json
import subprocess
from typing import Any
from unittest.mock import MagicMock

import pytest

from usagemonitor.errors import NoCredentials
from usagemonitor.keychain import CredentialStore

_REASONS = {200: "OK", 400: "Bad Request", 401: "Unauthorized", 403: "Forbidden", 500: "Internal Server Error"}


class MemoryStore(CredentialStore):
    """Credential store backed by a dict, recording every write."""

    def __init__(self, record: dict | None = None) -> None:
        self.record = copy.deepcopy(record)
        self.writes: list[dict] = []
        self.reads = 0
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None

    def read_record(self) -> dict:
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        if self.record is None:
            raise NoCredentials("No credentials stored")
        return copy.deepcopy(self.record)

    def write_record(self, record: dict) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.record = copy.deepcopy(record)
        self.writes.append(copy.deepcopy(record))


class FakeSecurity:
    """Stands in for subprocess.run of macOS security(1)."""

    def __init__(self, items: dict[str, bytes] | None = None) -> None:
        self.items: dict[str, bytes] = dict(items or {})
        self.calls: list[list[str]] = []
        self.fail: dict[str, tuple[int, bytes]] = {}

    def __call__(self, argv, capture_output=True, check=False):
        self.calls.append(list(argv))
        command = argv[1]
        service = argv[argv.index("-s") + 1]
        if command in self.fail:
            code, stderr = self.fail[command]
            return subprocess.CompletedProcess(argv, code, b"", stderr)
        if command == "find-generic-password":
            if service not in self.items:
                return subprocess.CompletedProcess(argv, 44, b"", b"item could not be found")
            return subprocess.CompletedProcess(argv, 0, self.items[service] + b"\n", b"")
        if command == "delete-generic-password":
            if self.items.pop(service, None) is None:
                return subprocess.CompletedProcess(argv, 44, b"", b"item could not be found")
            return subprocess.CompletedProcess(argv, 0, b"", b"")
        if command == "add-generic-password":
            self.items[service] = argv[argv.index("-w") + 1].encode("utf-8")
            return subprocess.CompletedProcess(argv, 0, b"", b"")
        raise AssertionError(f"unexpected security command {argv}")


def _response(status_code: int, payload: Any = None, text: str | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.reason = _REASONS.get(status_code, "")
    if payload is None:
        resp.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        resp.json.return_value = payload
    if text is None:
        text = json.dumps(payload) if payload is not None else ""
    resp.text = text
    return resp


@pytest.fixture
def make_response():
    return _response


@pytest.fixture
def make_store():
    return MemoryStore


@pytest.fixture
def fake_security():
    return FakeSecurity()
