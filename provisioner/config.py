"""
Run configuration.

Every knob of a provisioning run is resolved **once**, at preflight,
into an immutable :class:`ProvisioningConfig` that is passed explicitly
to each stage.  Nothing downstream reads ``os.environ`` on its own.

Sources, highest precedence first
---------------------------------
1. Process environment (``GW_PORT=18790 openclaw-provision``)
2. Optional YAML defaults file (``--config`` or ``OC_PROVISION_CONFIG``),
   keyed by the same variable names::

       GW_BIND: loopback
       OLLAMA_MODEL: "${DEFAULT_MODEL:-qwen2.5:7b}"

3. Built-in defaults.

String values in the YAML file may reference environment variables as
``$VAR``, ``${VAR}`` or ``${VAR:-default}``; unresolved references are
left unchanged.
"""

from __future__ import annotations

import os
import pwd
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .errors import ConfigError

# Matches  $VAR  ,  ${VAR}  ,  and  ${VAR:-default}
_ENV_RE = re.compile(
    r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}"
    r"|\$([A-Za-z_][A-Za-z0-9_]*)"
)

MODES = ("system", "user")
BIND_MODES = ("loopback", "lan", "tailnet", "custom")
AUTH_MODES = ("token", "password")
DM_POLICIES = ("pairing", "allowlist", "open", "disabled")
GROUP_POLICIES = ("allowlist", "open", "disabled")
LINGER_MODES = ("auto", "yes", "no")

DEFAULT_PORT = 18789
DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"
DEFAULT_MODEL = "llama3.1:8b"

# OpenClaw refuses to run on older Node releases
NODE_MIN_MAJOR = 22

UNIT_NAME = "openclaw-gateway.service"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _expand_env(value: str, environ: Mapping[str, str]) -> str:
    """Replace ``$VAR`` / ``${VAR}`` / ``${VAR:-default}`` with env values."""
    def _replace(m: re.Match[str]) -> str:
        if m.group(1) is not None:
            env_val = environ.get(m.group(1))
            if env_val is not None:
                return env_val
            default = m.group(2)
            return default if default is not None else m.group(0)
        return environ.get(m.group(3), m.group(0))
    return _ENV_RE.sub(_replace, value)


def load_defaults_file(path: str | Path, environ: Mapping[str, str]) -> dict[str, str]:
    """Read a YAML defaults file into ``{VARIABLE: string value}``."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}", stage="preflight")
    with open(path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}", stage="preflight") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping of VARIABLE: value", stage="preflight")

    out: dict[str, str] = {}
    for key, val in raw.items():
        if val is None:
            continue
        if isinstance(val, bool):
            val = "yes" if val else "no"
        val = str(val)
        out[str(key)] = _expand_env(val, environ)
    return out


@dataclass(frozen=True)
class ProvisioningConfig:
    """Resolved parameters for one provisioning run."""

    mode: str
    service_user: str
    home: Path
    secrets_dir: Path
    log_dir: Path
    maint_log_dir: Path
    port: int
    bind: str
    auth_mode: str
    dm_policy: str
    group_policy: str
    gateway_token_file: Path
    telegram_token_file: Path
    ollama_url: str
    model: str
    with_ollama: bool
    linger: str
    unit_dir: Path
    custom_bind_host: str = ""
    openclaw_bin: str = ""
    telegram_token: str = field(default="", repr=False)
    run_stamp: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d-%H%M%S"))

    @property
    def system(self) -> bool:
        return self.mode == "system"

    @property
    def config_dir(self) -> Path:
        return self.home / ".openclaw"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "openclaw.json"

    @property
    def npm_prefix(self) -> Path:
        return self.home / ".npm-global"

    @property
    def unit_name(self) -> str:
        return UNIT_NAME

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / UNIT_NAME

    @property
    def run_log(self) -> Path:
        return self.maint_log_dir / f"openclaw-setup-{self.run_stamp}.log"

    @property
    def ollama_is_local(self) -> bool:
        host = urlparse(self.ollama_url).hostname or ""
        return host in ("127.0.0.1", "localhost", "::1")

    def service_env(self) -> dict[str, str]:
        """Non-secret environment every ``openclaw`` invocation needs."""
        return {
            "OPENCLAW_CONFIG_PATH": str(self.config_file),
            "OPENCLAW_HOME": str(self.home),
        }


# ── Parsing helpers ──────────────────────────────────────────

def _choice(name: str, value: str, allowed: tuple[str, ...]) -> str:
    value = value.strip().lower()
    if value not in allowed:
        raise ConfigError(
            f"{name}={value!r} is not one of: {', '.join(allowed)}",
            stage="preflight",
        )
    return value


def _port(name: str, value: str) -> int:
    try:
        port = int(value.strip())
    except ValueError:
        raise ConfigError(f"{name}={value!r} is not an integer", stage="preflight") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"{name}={port} is outside 1-65535", stage="preflight")
    return port


def _flag(name: str, value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"{name}={value!r} is not a boolean (yes/no)", stage="preflight")


def resolve_config(
    environ: Mapping[str, str] | None = None,
    *,
    config_path: str | Path | None = None,
    current_user: str | None = None,
    user_home: Path | None = None,
) -> ProvisioningConfig:
    """Resolve a :class:`ProvisioningConfig` from env + YAML + defaults.

    *current_user* / *user_home* describe the invoking identity and are
    used for user-mode defaults; they default to the real process values.
    """
    environ = dict(os.environ if environ is None else environ)

    file_values: dict[str, str] = {}
    path = config_path or environ.get("OC_PROVISION_CONFIG")
    if path:
        file_values = load_defaults_file(path, environ)

    def get(key: str, default: str = "") -> str:
        if key in environ and environ[key] != "":
            return environ[key]
        if key in file_values and file_values[key] != "":
            return file_values[key]
        return default

    if current_user is None:
        current_user = pwd.getpwuid(os.geteuid()).pw_name
    if user_home is None:
        user_home = Path.home()

    mode = _choice("OC_MODE", get("OC_MODE", "system"), MODES)

    if mode == "system":
        service_user = get("OC_USER", "openclaw")
        home = Path(get("OC_HOME", "/var/lib/openclaw"))
        secrets_dir = Path(get("OC_ETC", "/etc/openclaw"))
        log_dir = Path(get("OC_LOG_DIR", "/var/log/openclaw"))
        maint_log_dir = Path(get("MAINT_LOG_DIR", "/var/log/openclaw-provision"))
        unit_dir = Path(get("OC_UNIT_DIR", "/etc/systemd/system"))
    else:
        service_user = get("OC_USER", current_user)
        if service_user != current_user:
            raise ConfigError(
                f"OC_USER={service_user!r} differs from the invoking user {current_user!r}; "
                "user-mode installs run as the invoking user",
                stage="preflight",
            )
        home = Path(get("OC_HOME", str(user_home)))
        secrets_dir = Path(get("OC_ETC", str(home / ".config" / "openclaw")))
        log_dir = Path(get("OC_LOG_DIR", str(home / ".local" / "state" / "openclaw")))
        maint_log_dir = Path(get("MAINT_LOG_DIR", str(home / ".local" / "state" / "openclaw-provision")))
        unit_dir = Path(get("OC_UNIT_DIR", str(home / ".config" / "systemd" / "user")))

    raw_bind = get("GW_BIND")
    if not raw_bind:
        raise ConfigError(
            "GW_BIND is required (one of: " + ", ".join(BIND_MODES) + ")",
            stage="preflight",
            hint="Re-run with GW_BIND=loopback for a local-only gateway",
        )
    bind = _choice("GW_BIND", raw_bind, BIND_MODES)
    custom_bind_host = get("GW_CUSTOM_BIND_HOST")
    if bind == "custom" and not custom_bind_host:
        raise ConfigError("GW_BIND=custom requires GW_CUSTOM_BIND_HOST", stage="preflight")

    ollama_url = get("OLLAMA_URL", DEFAULT_OLLAMA_URL).rstrip("/")
    if urlparse(ollama_url).scheme not in ("http", "https"):
        raise ConfigError(f"OLLAMA_URL={ollama_url!r} is not an http(s) URL", stage="preflight")

    return ProvisioningConfig(
        mode=mode,
        service_user=service_user,
        home=home,
        secrets_dir=secrets_dir,
        log_dir=log_dir,
        maint_log_dir=maint_log_dir,
        port=_port("GW_PORT", get("GW_PORT", str(DEFAULT_PORT))),
        bind=bind,
        auth_mode=_choice("GW_AUTH", get("GW_AUTH", "token"), AUTH_MODES),
        dm_policy=_choice("DM_POLICY", get("DM_POLICY", "pairing"), DM_POLICIES),
        group_policy=_choice("GROUP_POLICY", get("GROUP_POLICY", "allowlist"), GROUP_POLICIES),
        gateway_token_file=Path(get("GW_TOKEN_FILE", str(secrets_dir / "gateway.token"))),
        telegram_token_file=Path(get("TG_TOKEN_FILE", str(secrets_dir / "telegram.bot_token"))),
        ollama_url=ollama_url,
        model=get("OLLAMA_MODEL", DEFAULT_MODEL),
        with_ollama=_flag("OC_WITH_OLLAMA", get("OC_WITH_OLLAMA", "yes")),
        linger=_choice("OC_LINGER", get("OC_LINGER", "auto"), LINGER_MODES),
        unit_dir=unit_dir,
        custom_bind_host=custom_bind_host,
        openclaw_bin=get("OPENCLAW_BIN"),
        telegram_token=get("TELEGRAM_BOT_TOKEN").strip(),
    )


def describe(cfg: ProvisioningConfig) -> dict[str, Any]:
    """Non-secret summary of *cfg* for logs and the run report."""
    return {
        "mode": cfg.mode,
        "service_user": cfg.service_user,
        "home": str(cfg.home),
        "config_file": str(cfg.config_file),
        "port": cfg.port,
        "bind": cfg.bind,
        "auth_mode": cfg.auth_mode,
        "dm_policy": cfg.dm_policy,
        "group_policy": cfg.group_policy,
        "ollama_url": cfg.ollama_url,
        "model": cfg.model,
        "with_ollama": cfg.with_ollama,
        "linger": cfg.linger,
        "telegram_token_supplied": bool(cfg.telegram_token),
    }
