"""
Pre-flight stage.

Runs before anything on the host is mutated:

1. Identity check — system-mode installs require root, user-mode
   installs require a regular user.  Mixing them corrupts ownership of
   the install tree, so a mismatch is fatal.
2. Run log — an append-only, owner-only log file that receives every
   record the console does (secrets redacted).
3. Port check — informational only; the port is expected to be busy
   on reruns because our own gateway holds it.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from rich.logging import RichHandler

from .config import ProvisioningConfig
from .errors import PreconditionError
from .host import Host

logger = logging.getLogger(__name__)

# Patterns that look like secret values (Bearer tokens, --token args, etc.)
_SECRET_PATTERNS = re.compile(
    r"(Bearer\s+)\S+|"                    # Bearer <token>
    r"(--(?:token|password)[=\s]+)\S+|"   # --token <value>
    r"(bot\d+:)[A-Za-z0-9_-]+",           # Telegram bot URLs
    flags=re.IGNORECASE,
)

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


# ── Result types ─────────────────────────────────────────────

@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str
    fix_hint: str = ""


@dataclass
class PreflightReport:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)


# ── Redaction ────────────────────────────────────────────────

class RedactingFilter(logging.Filter):
    """Scrub registered secret values and secret-looking substrings."""

    def __init__(self) -> None:
        super().__init__()
        self._secrets: set[str] = set()

    def register(self, value: str) -> None:
        if value:
            self._secrets.add(value)

    def scrub(self, text: str) -> str:
        for s in self._secrets:
            text = text.replace(s, "***")
        return _SECRET_PATTERNS.sub(
            lambda m: (m.group(1) or m.group(2) or m.group(3) or "") + "***", text
        )

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        clean = self.scrub(msg)
        if clean != msg:
            record.msg = clean
            record.args = None
        return True


redactor = RedactingFilter()

# Handlers added by setup_logging, replaced on each call
_installed: list[logging.Handler] = []


# ── Logging ──────────────────────────────────────────────────

def _open_private_log(path: Path) -> None:
    """Create *path* owner-only before any handler writes to it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
    os.close(fd)
    os.chmod(path, 0o600)


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    """Console via rich; optionally duplicate everything into *log_file*."""
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    while _installed:
        h = _installed.pop()
        root.removeHandler(h)
        h.close()

    console = RichHandler(rich_tracebacks=True, show_path=False)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    console.addFilter(redactor)
    root.addHandler(console)
    _installed.append(console)

    if log_file is not None:
        _open_private_log(log_file)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT))
        fh.addFilter(redactor)
        root.addHandler(fh)
        _installed.append(fh)


# ── Checks ───────────────────────────────────────────────────

def check_identity(cfg: ProvisioningConfig, host: Host) -> CheckResult:
    euid = host.euid()
    if cfg.system and euid != 0:
        raise PreconditionError(
            "System-mode install must run as root",
            stage="preflight",
            hint="sudo -E openclaw-provision   (or OC_MODE=user for a per-user install)",
        )
    if not cfg.system and euid == 0:
        raise PreconditionError(
            "User-mode install must not run as root",
            stage="preflight",
            hint="Run as the account that will own the gateway, without sudo",
        )
    who = "root" if euid == 0 else host.current_user()
    return CheckResult(name="Identity", passed=True, message=f"{cfg.mode} mode as {who}")


def check_port(port: int, host: Host) -> CheckResult:
    """Report whether something already listens on the gateway port."""
    try:
        in_use = host.port_open(port)
    except OSError as exc:
        return CheckResult(name=f"Port {port}", passed=True, message=f"Assumed available ({exc})")
    if in_use:
        return CheckResult(
            name=f"Port {port}",
            passed=True,
            message="In use (expected on reruns; the service will be restarted)",
        )
    return CheckResult(name=f"Port {port}", passed=True, message="Available")


def run_preflight(cfg: ProvisioningConfig, host: Host, verbose: bool = False) -> PreflightReport:
    """Run the pre-mutation checks; raises on any fatal precondition.

    The run log is opened once the identity check passes, so every
    check result below lands in it.
    """
    report = PreflightReport()
    report.checks.append(check_identity(cfg, host))
    setup_logging(cfg.run_log, verbose)
    report.checks.append(check_port(cfg.port, host))
    for c in report.checks:
        logger.info("%s: %s", c.name, c.message)
    return report
