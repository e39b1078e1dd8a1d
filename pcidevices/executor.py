"""Running host commands from inside the device management container."""

from __future__ import annotations

import posixpath
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Sequence

LOCAL_EXECUTOR_PREFIX = "/host"
SRIOV_MANAGE_COMMAND = "/usr/lib/nvidia/sriov-manage"
FILE_COMMAND = "/usr/bin/file"


def _join(prefix: str, path: str) -> str:
    return posixpath.normpath(posixpath.join(prefix, path.lstrip("/")))


class Executor(ABC):
    """Something that runs a command and returns its standard output."""

    @abstractmethod
    def run(self, cmd: str, args: Sequence[str]) -> bytes:
        """Run cmd with args and return its standard output."""

    @abstractmethod
    def check_ready(self) -> bytes:
        """Check that the tools the executor needs are present."""


class LocalExecutor(Executor):
    """Runs commands from the host filesystem mounted under a prefix."""

    def __init__(
        self, env_vars: Sequence[str] | None = None, prefix: str = LOCAL_EXECUTOR_PREFIX
    ) -> None:
        self.env_vars = list(env_vars or [])
        self.prefix = prefix

    def _environment(self) -> dict[str, str] | None:
        if not self.env_vars:
            return None
        env: dict[str, str] = {}
        for entry in self.env_vars:
            key, _, value = entry.partition("=")
            env[key] = value
        return env

    def run(self, cmd: str, args: Sequence[str]) -> bytes:
        """Run the prefixed command; raise CalledProcessError on failure."""
        completed = subprocess.run(
            [_join(self.prefix, cmd), *args],
            env=self._environment(),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
        )
        return completed.stdout

    def check_ready(self) -> bytes:
        """Check that the host provides the sriov-manage tool."""
        return self.run(FILE_COMMAND, [_join(self.prefix, SRIOV_MANAGE_COMMAND)])