"""
Error taxonomy for op-env-manager.

Every failure the engine can surface derives from OpEnvError so the
CLI can map it to exit code 2 in one place. Remote errors carry the
operation label of the step that produced them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class OpEnvError(Exception):
    """Base class for all op-env-manager errors."""


class ConfigError(OpEnvError):
    """Raised for invalid configuration (environment, options, config file)."""


class LocalIOError(OpEnvError):
    """Raised when reading or writing a local file fails.

    Attributes:
        path: The file that could not be read or written.
    """

    def __init__(self, path: Path | str, message: str):
        self.path = Path(path)
        super().__init__(f"{message}: {self.path}")


class RemoteError(OpEnvError):
    """Raised when a call against the vault fails.

    Attributes:
        label: Human-readable operation label (e.g. "update item").
        output: Raw error output from the remote tool.
        returncode: Process exit status, when there was a process.
    """

    def __init__(
        self,
        label: str,
        output: str,
        returncode: Optional[int] = None,
    ):
        self.label = label
        self.output = output.strip()
        self.returncode = returncode
        first_line = self.output.splitlines()[0] if self.output else "unknown error"
        super().__init__(f"{label} failed: {first_line}")


class MalformedReferenceError(OpEnvError):
    """Raised when an op:// reference cannot be parsed."""


class SyncError(OpEnvError):
    """Raised by the orchestrator when a run fails after local mutation began.

    Attributes:
        phase: The phase that was active when the failure happened.
    """

    def __init__(self, phase: str, message: str):
        self.phase = phase
        super().__init__(f"{message} (during {phase})")
