# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PipelaneError(Exception):
    """Base class for everything pipelane raises on purpose."""


@dataclass
class ConfigurationError(PipelaneError):
    """A pipeline definition is malformed. Fails the run before any job executes."""
    pipeline: str
    message: str

    def __str__(self) -> str:
        return f"invalid pipeline '{self.pipeline}': {self.message}"


@dataclass
class StepFailure(PipelaneError):
    pipeline: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.pipeline}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class PublishErrorKind(str, Enum):
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    TRANSIENT_NETWORK_ERROR = "TransientNetworkError"
    TAG_CONFLICT = "TagConflict"
    PUSH_REJECTED = "PushRejected"

    @property
    def retryable(self) -> bool:
        return self is PublishErrorKind.TRANSIENT_NETWORK_ERROR


@dataclass
class PublishError(PipelaneError):
    kind: PublishErrorKind
    target: str
    message: str = ""
    attempts: int = 1
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message or 'publish failed'}", f"target={self.target}"]
        if self.attempts > 1:
            lines.append(f"attempts={self.attempts}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class RunCancelled(PipelaneError):
    """Raised at a suspension point once the run-level cancel signal is set."""
