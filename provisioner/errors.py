"""
Error taxonomy for a provisioning run.

Every fatal condition is a :class:`ProvisionError`.  The runner's global
handler catches it (and anything unexpected), reports the stage, the
failing ``file:line`` and the run-log path, then exits non-zero.

Best-effort failures (config overrides, verification checks) are *not*
exceptions; they are collected as result objects and reported.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for fatal provisioning failures."""

    def __init__(self, message: str, *, stage: str = "", hint: str = ""):
        super().__init__(message)
        self.stage = stage
        self.hint = hint


class PreconditionError(ProvisionError):
    """Wrong identity, missing mandatory input, or unusable host."""


class ConfigError(PreconditionError):
    """An environment / YAML value could not be parsed or validated."""


class DependencyError(ProvisionError):
    """A dependency is missing or never became reachable."""


class CommandError(ProvisionError):
    """A mandatory external command exited non-zero."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str = "", *, stage: str = "", hint: str = ""):
        tail = stderr.strip().splitlines()[-5:]
        detail = ("\n  " + "\n  ".join(tail)) if tail else ""
        super().__init__(
            f"Command failed (exit {returncode}): {' '.join(cmd)}{detail}",
            stage=stage,
            hint=hint,
        )
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
