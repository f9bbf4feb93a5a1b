"""
Config reconciler for ``openclaw.json``.

Two layers:

1. **Baseline document** — only the fields the gateway needs to start
   (port, bind, auth marker, Telegram channel).  Fields whose shape has
   drifted across OpenClaw releases are deliberately left out.  The
   baseline is merged into whatever is on disk (unknown keys survive),
   and the file is only rewritten, after a timestamped backup, when
   the merged result differs.
2. **Overrides** — per-key ``openclaw config set`` calls through the
   application's own CLI.  Each key succeeds or fails on its own; a
   rejected key is recorded and reported, never fatal, because the set
   of valid keys moves with upstream releases.

Whatever else changes, ``gateway.auth`` is always written as an object
(``{"mode": "token"}``).  A bare string there is rejected by the
gateway's schema validation, and older setup scripts wrote exactly
that.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import ProvisioningConfig
from .host import Host, refuse_symlink

logger = logging.getLogger(__name__)

STAGE = "config"


# ── Document rendering ───────────────────────────────────────

def render_baseline(cfg: ProvisioningConfig, telegram_enabled: bool) -> dict[str, Any]:
    gateway: dict[str, Any] = {
        "mode": "local",
        "port": cfg.port,
        "bind": cfg.bind,
        "auth": {"mode": cfg.auth_mode},
    }
    if cfg.bind == "custom":
        gateway["customBindHost"] = cfg.custom_bind_host

    if telegram_enabled:
        telegram: dict[str, Any] = {
            "enabled": True,
            "tokenFile": str(cfg.telegram_token_file),
            "dmPolicy": cfg.dm_policy,
            "groupPolicy": cfg.group_policy,
        }
    else:
        telegram = {"enabled": False}

    return {"gateway": gateway, "channels": {"telegram": telegram}}


def normalize_auth(doc: dict[str, Any]) -> bool:
    """Coerce a scalar ``gateway.auth`` into ``{"mode": <scalar>}``.

    Returns ``True`` if *doc* was modified.
    """
    gw = doc.get("gateway")
    if not isinstance(gw, dict) or "auth" not in gw:
        return False
    auth = gw["auth"]
    if isinstance(auth, dict):
        return False
    gw["auth"] = {"mode": str(auth)} if auth not in (None, "") else {"mode": "token"}
    logger.warning("gateway.auth was a bare %s; rewritten as an object", type(auth).__name__)
    return True


def merge(base: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *desired* into a copy of *base* (desired wins)."""
    out = copy.deepcopy(base)
    for key, val in desired.items():
        if isinstance(val, dict) and isinstance(out.get(key), dict):
            out[key] = merge(out[key], val)
        else:
            out[key] = copy.deepcopy(val)
    return out


def load_document(path: Path) -> dict[str, Any] | None:
    """Return the parsed document, ``None`` if absent, ``{}`` if unreadable."""
    if not path.exists():
        return None
    try:
        with open(path) as f:
            doc = json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError):
        logger.warning("Existing %s is not valid JSON; it will be backed up and replaced", path)
        return {}
    if not isinstance(doc, dict):
        logger.warning("Existing %s is not a JSON object; it will be backed up and replaced", path)
        return {}
    return doc


def desired_document(
    cfg: ProvisioningConfig,
    telegram_enabled: bool,
    current: dict[str, Any] | None,
) -> dict[str, Any]:
    doc = dict(current or {})
    normalize_auth(doc)
    if not telegram_enabled:
        # Drop stale tokenFile/policies so the channel is cleanly off
        channels = doc.get("channels")
        if isinstance(channels, dict) and isinstance(channels.get("telegram"), dict):
            channels = dict(channels)
            channels["telegram"] = {}
            doc["channels"] = channels
    return merge(doc, render_baseline(cfg, telegram_enabled))


# ── Writing ──────────────────────────────────────────────────

@dataclass
class ConfigChange:
    path: Path
    changed: bool
    backup: Path | None = None


def backup_path(path: Path, stamp: str) -> Path:
    return path.with_name(f"{path.name}.bak.{stamp}")


def write_document(cfg: ProvisioningConfig, host: Host, doc: dict[str, Any]) -> None:
    """Atomic, owner-only write of the config document."""
    path = cfg.config_file
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(doc, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    host.chown(path, cfg.service_user)


def _refuse_links(cfg: ProvisioningConfig) -> None:
    refuse_symlink(cfg.config_dir, STAGE)
    refuse_symlink(cfg.config_file, STAGE)


def reconcile_document(cfg: ProvisioningConfig, host: Host, telegram_enabled: bool) -> ConfigChange:
    path = cfg.config_file
    _refuse_links(cfg)
    current = load_document(path)
    desired = desired_document(cfg, telegram_enabled, current)

    if current is not None and current == desired:
        logger.info("Config already up to date: %s", path)
        os.chmod(path, 0o600)
        host.chown(path, cfg.service_user)
        return ConfigChange(path=path, changed=False)

    backup = None
    if current is not None:
        backup = backup_path(path, cfg.run_stamp)
        refuse_symlink(backup, STAGE)
        shutil.copy2(path, backup, follow_symlinks=False)
        os.chmod(backup, 0o600)
        host.chown(backup, cfg.service_user)
        logger.info("Backed up previous config to %s", backup)

    write_document(cfg, host, desired)
    logger.info("Wrote %s", path)
    return ConfigChange(path=path, changed=True, backup=backup)


# ── Overrides via the openclaw CLI ───────────────────────────

@dataclass
class Override:
    key: str
    value: Any

    def cli_value(self) -> str:
        return self.value if isinstance(self.value, str) else json.dumps(self.value)


@dataclass
class OverrideResult:
    key: str
    ok: bool
    error: str = ""


@dataclass
class OverrideReport:
    results: list[OverrideResult] = field(default_factory=list)

    @property
    def failed(self) -> list[OverrideResult]:
        return [r for r in self.results if not r.ok]

    @property
    def applied(self) -> list[OverrideResult]:
        return [r for r in self.results if r.ok]


def planned_overrides(cfg: ProvisioningConfig, telegram_enabled: bool) -> list[Override]:
    overrides = [
        Override("gateway.mode", "local"),
        Override("gateway.port", cfg.port),
        Override("gateway.bind", cfg.bind),
        Override("gateway.auth.mode", cfg.auth_mode),
    ]
    if cfg.bind == "custom":
        overrides.append(Override("gateway.customBindHost", cfg.custom_bind_host))

    overrides.append(Override("channels.telegram.enabled", telegram_enabled))
    if telegram_enabled:
        overrides += [
            Override("channels.telegram.tokenFile", str(cfg.telegram_token_file)),
            Override("channels.telegram.dmPolicy", cfg.dm_policy),
            Override("channels.telegram.groupPolicy", cfg.group_policy),
        ]

    if cfg.with_ollama and cfg.model:
        overrides += [
            Override("models.providers.ollama.baseUrl", f"{cfg.ollama_url}/v1"),
            Override("models.providers.ollama.api", "openai-completions"),
            Override("agents.defaults.model.primary", f"ollama/{cfg.model}"),
        ]
    return overrides


def apply_overrides(
    cfg: ProvisioningConfig,
    host: Host,
    openclaw_bin: str,
    overrides: list[Override],
) -> OverrideReport:
    report = OverrideReport()
    for ov in overrides:
        r = host.run(
            [openclaw_bin, "config", "set", ov.key, ov.cli_value()],
            user=cfg.service_user,
            env=cfg.service_env(),
            timeout=30,
        )
        if r.ok:
            report.results.append(OverrideResult(ov.key, True))
        else:
            err = (r.stderr or r.stdout or f"exit {r.returncode}").splitlines()[-1]
            report.results.append(OverrideResult(ov.key, False, err))

    if report.failed:
        logger.warning(
            "%d of %d config overrides were rejected (tolerated): %s",
            len(report.failed),
            len(report.results),
            ", ".join(f.key for f in report.failed),
        )
    else:
        logger.info("Applied %d config overrides", len(report.results))
    return report


def enforce_auth_object(cfg: ProvisioningConfig, host: Host) -> bool:
    """Re-check the document after overrides; repair ``gateway.auth``.

    Returns ``True`` if the file had to be rewritten.
    """
    _refuse_links(cfg)
    doc = load_document(cfg.config_file)
    if not doc:
        return False
    if not normalize_auth(doc):
        return False
    write_document(cfg, host, doc)
    return True


@dataclass
class ConfigReport:
    change: ConfigChange
    overrides: OverrideReport
    auth_repaired: bool = False


def reconcile_config(
    cfg: ProvisioningConfig,
    host: Host,
    openclaw_bin: str,
    telegram_enabled: bool,
) -> ConfigReport:
    """Stage entry point."""
    change = reconcile_document(cfg, host, telegram_enabled)
    overrides = apply_overrides(cfg, host, openclaw_bin, planned_overrides(cfg, telegram_enabled))
    repaired = enforce_auth_object(cfg, host)
    return ConfigReport(change=change, overrides=overrides, auth_repaired=repaired)
