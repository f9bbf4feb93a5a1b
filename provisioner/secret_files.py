"""
Secret manager.

Two secret slots are managed, each as a single file:

* the gateway token — generated here, 48 random bytes, URL-safe
* the Telegram bot token — copied from ``TELEGRAM_BOT_TOKEN``

Rules, applied identically on every run:

* A file that exists and is non-empty is **reused**: ownership and mode
  are re-asserted, content is never touched.  To rotate, delete the
  file and rerun.
* New content is written to a temporary file created owner-only
  (``0600`` under a ``077`` umask) in the destination directory, then
  renamed into place, so no reader ever sees the file group/world
  readable while it holds content.
* Values never reach the log; they are registered with the redacting
  log filter as soon as they are known.
"""

from __future__ import annotations

import enum
import logging
import os
import secrets
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .config import ProvisioningConfig
from .host import Host
from .preflight import redactor

logger = logging.getLogger(__name__)


class SecretAction(str, enum.Enum):
    REUSE = "reuse"        # keep existing content, re-assert perms
    WRITE = "write"        # copy a supplied value
    GENERATE = "generate"  # create a fresh random value
    ABSENT = "absent"      # slot stays empty (optional secret)


@dataclass
class SecretOutcome:
    name: str
    path: Path
    action: SecretAction
    note: str = ""


@dataclass
class SecretReport:
    outcomes: list[SecretOutcome] = field(default_factory=list)

    def get(self, name: str) -> SecretOutcome | None:
        for o in self.outcomes:
            if o.name == name:
                return o
        return None

    @property
    def telegram_enabled(self) -> bool:
        tg = self.get("telegram")
        return tg is not None and tg.action != SecretAction.ABSENT


def generate_token() -> str:
    # 48 bytes -> 64 URL-safe characters
    return secrets.token_urlsafe(48)


def plan_secret(present_nonempty: bool, supplied: str, generate: bool) -> SecretAction:
    """Decide what to do with one slot given what is on disk."""
    if present_nonempty:
        return SecretAction.REUSE
    if supplied:
        return SecretAction.WRITE
    if generate:
        return SecretAction.GENERATE
    return SecretAction.ABSENT


def _present_nonempty(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


@contextmanager
def _private_umask() -> Iterator[None]:
    old = os.umask(0o077)
    try:
        yield
    finally:
        os.umask(old)


def write_secret_file(path: Path, value: str) -> None:
    """Atomically replace *path* with *value*, never exposing it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with _private_umask():
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(value.strip() + "\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


def secret_mode(cfg: ProvisioningConfig) -> int:
    # root:<service group> 0640 for system installs, owner-only otherwise
    return 0o640 if cfg.system else 0o600


def assert_permissions(cfg: ProvisioningConfig, host: Host, path: Path) -> None:
    if cfg.system:
        host.chown(path, "root", cfg.service_user)
    else:
        host.chown(path, cfg.service_user)
    os.chmod(path, secret_mode(cfg))


def read_secret(path: Path) -> str:
    return path.read_text().strip()


def reconcile_secret(
    cfg: ProvisioningConfig,
    host: Host,
    name: str,
    path: Path,
    *,
    supplied: str = "",
    generate: bool = False,
) -> SecretOutcome:
    present = _present_nonempty(path)
    action = plan_secret(present, supplied, generate)
    note = ""

    if action == SecretAction.REUSE:
        existing = read_secret(path)
        redactor.register(existing)
        if supplied and supplied != existing:
            note = "supplied value differs from the existing file; delete the file to rotate"
            logger.warning("%s: %s (%s)", name, note, path)
        assert_permissions(cfg, host, path)
        logger.info("Using existing %s secret file: %s", name, path)

    elif action in (SecretAction.WRITE, SecretAction.GENERATE):
        value = supplied if action == SecretAction.WRITE else generate_token()
        redactor.register(value)
        write_secret_file(path, value)
        assert_permissions(cfg, host, path)
        verb = "Wrote" if action == SecretAction.WRITE else "Generated"
        logger.info("%s %s secret file: %s", verb, name, path)

    else:
        if path.exists():
            # empty leftover from an interrupted run
            path.unlink()
            note = "removed empty file"
        logger.info("No %s secret supplied; slot left empty", name)

    return SecretOutcome(name=name, path=path, action=action, note=note)


def ensure_secrets(cfg: ProvisioningConfig, host: Host) -> SecretReport:
    """Stage entry point: gateway token (always) + Telegram (optional)."""
    report = SecretReport()
    cfg.secrets_dir.mkdir(parents=True, exist_ok=True)
    report.outcomes.append(
        reconcile_secret(cfg, host, "gateway", cfg.gateway_token_file, generate=True)
    )
    report.outcomes.append(
        reconcile_secret(cfg, host, "telegram", cfg.telegram_token_file, supplied=cfg.telegram_token)
    )
    if not report.telegram_enabled:
        logger.info("Telegram disabled (set TELEGRAM_BOT_TOKEN to enable)")
    return report
