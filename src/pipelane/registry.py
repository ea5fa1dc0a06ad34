# registry.py
from __future__ import annotations

import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol

from .errors import PublishError, PublishErrorKind, RunCancelled
from .model import CredentialRef, RegistryTarget
from .shell import CommandResult, CommandRunner, ShellRunner, build_env, redact


@dataclass(frozen=True)
class PublishResult:
    success: bool
    reference: str
    digest: str | None = None
    attempts: int = 1


# ---------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------

class SecretStore(Protocol):
    def resolve(self, ref: CredentialRef) -> str:
        ...


class EnvSecretStore:
    """Resolves credential handles from environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def resolve(self, ref: CredentialRef) -> str:
        value = self._environ.get(ref.handle)
        if not value:
            raise PublishError(
                kind=PublishErrorKind.AUTHENTICATION_FAILED,
                target="",
                message=f"credential '{ref.handle}' is not set",
            )
        return value


# ---------------------------------------------------------------------
# Registry client (docker CLI)
# ---------------------------------------------------------------------

class RegistryClient(Protocol):
    def login(self, host: str, username: str, secret: str, *, cancel: Optional[threading.Event] = None) -> None:
        ...

    def push(self, local_image: str, reference: str, *, cancel: Optional[threading.Event] = None) -> str | None:
        """Push `local_image` as `reference`; return the remote digest if known."""
        ...


_TAG_CONFLICT = re.compile(
    r"tag invalid|cannot be overwritten|ImageTagAlreadyExists|\btag\b[^\n]*already exists|immutable",
    re.IGNORECASE,
)
_AUTH = re.compile(
    r"unauthorized|authentication required|no basic auth credentials|access denied|"
    r"denied: requested access|incorrect username or password|\b401\b|\b403\b|"
    r"token (?:has )?expired|ExpiredToken",
    re.IGNORECASE,
)
_TRANSIENT = re.compile(
    r"timeout|timed out|connection (?:reset|refused)|broken pipe|no such host|"
    r"temporary failure|TLS handshake|unexpected EOF|i/o timeout|too many requests|"
    r"\b429\b|\b500\b|\b502\b|\b503\b|\b504\b|service unavailable|bad gateway|net/http",
    re.IGNORECASE,
)
_DIGEST = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


def classify_failure(output: str) -> PublishErrorKind:
    """Map registry CLI output to an error kind. Order matters: conflicts before auth."""
    if _TAG_CONFLICT.search(output):
        return PublishErrorKind.TAG_CONFLICT
    if _AUTH.search(output):
        return PublishErrorKind.AUTHENTICATION_FAILED
    if _TRANSIENT.search(output):
        return PublishErrorKind.TRANSIENT_NETWORK_ERROR
    return PublishErrorKind.PUSH_REJECTED


class DockerRegistryClient:
    """Talks to registries through the docker CLI."""

    def __init__(self, runner: Optional[CommandRunner] = None, docker: str = "docker", cwd: str | Path = "."):
        self.runner = runner or ShellRunner()
        self.docker = docker
        self.cwd = Path(cwd)

    def _run(self, args: List[str], *, stdin: str | None = None, cancel=None, secrets=()) -> CommandResult:
        res = self.runner([self.docker, *args], cwd=self.cwd, env=build_env(), stdin=stdin, cancel=cancel)
        if not res.ok:
            # push progress ("Layer already exists") lives on stdout
            output = redact(res.stderr or res.output, secrets)
            raise PublishError(
                kind=classify_failure(output),
                target=args[-1],
                message=output.strip().splitlines()[-1] if output.strip() else f"docker {args[0]} failed",
                details={"exit_code": res.exit_code},
            )
        return res

    def login(self, host: str, username: str, secret: str, *, cancel: Optional[threading.Event] = None) -> None:
        self._run(
            ["login", "--username", username, "--password-stdin", host],
            stdin=secret,
            cancel=cancel,
            secrets=[secret],
        )

    def push(self, local_image: str, reference: str, *, cancel: Optional[threading.Event] = None) -> str | None:
        self._run(["tag", local_image, reference], cancel=cancel)
        res = self._run(["push", reference], cancel=cancel)
        m = _DIGEST.search(res.stdout)
        return m.group(1) if m else None


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

class RegistryPublisher:
    """
    Pushes a built image to one registry target.

    Transient network errors are retried with exponential backoff, up to
    `max_attempts` attempts in total. Auth failures, tag conflicts and other
    rejections fail on the first attempt.
    """

    def __init__(
        self,
        client: RegistryClient,
        secrets: Optional[SecretStore] = None,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.client = client
        self.secrets = secrets or EnvSecretStore()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _wait(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)
        if cancel is not None and cancel.is_set():
            raise RunCancelled("cancelled during publish backoff")

    def _attempt(self, local_image: str, target: RegistryTarget, reference: str, cancel) -> str | None:
        if target.credential is not None:
            secret = self.secrets.resolve(target.credential)
            self.client.login(target.host, target.credential.username, secret, cancel=cancel)
        return self.client.push(local_image, reference, cancel=cancel)

    def publish(
        self,
        local_image: str,
        target: RegistryTarget,
        tag: str,
        *,
        cancel: Optional[threading.Event] = None,
        on_retry: Optional[Callable[[str, int, float], None]] = None,
    ) -> PublishResult:
        reference = target.reference(tag)
        attempt = 0
        while True:
            attempt += 1
            if cancel is not None and cancel.is_set():
                raise RunCancelled("cancelled before publish")
            try:
                digest = self._attempt(local_image, target, reference, cancel)
                return PublishResult(success=True, reference=reference, digest=digest, attempts=attempt)
            except PublishError as e:
                e.target = reference
                e.attempts = attempt
                if not e.kind.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                if on_retry is not None:
                    on_retry(reference, attempt + 1, delay)
                self._wait(delay, cancel)
