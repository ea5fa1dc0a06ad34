# shell.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Sequence, Union

from .errors import RunCancelled

# How much of stdout/stderr a result keeps (tail).
OUTPUT_TAIL = 8000
POLL_SECONDS = 0.2


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(x for x in (self.stdout, self.stderr) if x)


class CommandRunner(Protocol):
    def __call__(
        self,
        cmd: Union[str, Sequence[str]],
        *,
        cwd: Path,
        env: Mapping[str, str],
        stdin: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        ...


def build_env(*layers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """os.environ overlaid with each layer in order."""
    env = os.environ.copy()
    for layer in layers:
        if layer:
            env.update({k: str(v) for k, v in layer.items()})
    return env


def redact(text: str, secrets: Sequence[str]) -> str:
    for s in secrets:
        if s:
            text = text.replace(s, "***")
    return text


class ShellRunner:
    """
    Runs commands as child processes and hands back exit status + output.

    String commands go through the shell, sequences are exec'd directly.
    A set cancel event kills the whole process group at the next poll.
    """

    def __init__(self, tail: int = OUTPUT_TAIL, poll_seconds: float = POLL_SECONDS):
        self.tail = tail
        self.poll_seconds = poll_seconds

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def __call__(
        self,
        cmd: Union[str, Sequence[str]],
        *,
        cwd: Path,
        env: Mapping[str, str],
        stdin: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        if cancel is not None and cancel.is_set():
            raise RunCancelled("cancelled before command start")

        started = time.monotonic()
        proc = subprocess.Popen(
            cmd,
            shell=isinstance(cmd, str),
            cwd=str(cwd),
            env=dict(env),
            text=True,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            # own process group, so a cancel reaches the shell's children too
            start_new_session=True,
        )

        pending_input = stdin
        while True:
            try:
                stdout, stderr = proc.communicate(input=pending_input, timeout=self.poll_seconds)
                break
            except subprocess.TimeoutExpired:
                # communicate() must not be handed the input twice
                pending_input = None
                if cancel is not None and cancel.is_set():
                    self._kill(proc)
                    proc.communicate()
                    raise RunCancelled(f"cancelled while running: {cmd}")

        return CommandResult(
            exit_code=proc.returncode,
            stdout=(stdout or "")[-self.tail:],
            stderr=(stderr or "")[-self.tail:],
            duration=time.monotonic() - started,
        )
