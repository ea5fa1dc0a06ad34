from __future__ import annotations

from typing import Dict, List

import pytest

from pipelane.errors import PublishError, PublishErrorKind
from pipelane.registry import EnvSecretStore, RegistryPublisher
from pipelane.ui.console import Console


class FakeRegistryClient:
    """
    In-memory registry. `failures` maps a registry host to the error kinds
    its next pushes raise, in order; once drained, pushes succeed.
    """

    def __init__(self, failures: Dict[str, List[PublishErrorKind]] | None = None):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.logins: List[tuple] = []
        self.pushed: List[tuple] = []
        self.attempts = 0

    def login(self, host, username, secret, *, cancel=None):
        self.logins.append((host, username, secret))

    def push(self, local_image, reference, *, cancel=None):
        self.attempts += 1
        host = reference.split("/", 1)[0]
        queue = self.failures.get(host)
        if queue:
            kind = queue.pop(0)
            raise PublishError(kind=kind, target=reference, message=f"simulated {kind.value}")
        self.pushed.append((local_image, reference))
        return "sha256:" + "ab" * 32


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_publisher(sleeps):
    def _make(client, environ=None, max_attempts=3):
        return RegistryPublisher(
            client,
            EnvSecretStore(environ if environ is not None else {"REG_TOKEN": "s3cret"}),
            max_attempts=max_attempts,
            backoff_seconds=1.0,
            sleep=sleeps.append,
        )

    return _make


@pytest.fixture
def registry_client():
    return FakeRegistryClient
