"""
Dependency installer.

Every dependency follows the same shape: *check* whether it is present
and adequate, *install* through its own official channel only when it
is not, then *re-check*.  Something that already meets the minimum is
never upgraded.

Dependencies
------------
1. OS packages   – ``dpkg-query`` per package, ``apt-get`` only for misses
2. Node.js ≥ 22  – NodeSource ``setup_22.x`` + apt
3. Service user  – ``useradd --system`` + directory layout (system mode)
4. OpenClaw      – ``npm install -g --prefix <home>/.npm-global`` run as
                   the service user, never as root
5. Ollama        – official ``install.sh``; then wait for ``/api/tags`` and
                   pull the configured model only if it is missing
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from http.client import HTTPException
from pathlib import Path

from .config import NODE_MIN_MAJOR, ProvisioningConfig
from .errors import DependencyError, PreconditionError
from .host import Host, refuse_symlink
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

STAGE = "dependencies"

OS_PACKAGES = ("ca-certificates", "curl", "gnupg", "iproute2", "procps")

NODESOURCE_SETUP = f"https://deb.nodesource.com/setup_{NODE_MIN_MAJOR}.x"
OLLAMA_INSTALL = "https://ollama.com/install.sh"

OLLAMA_WAIT = RetryPolicy(interval=2.0, attempts=15)


@dataclass
class DependencyReport:
    """What the installer found and what it had to do."""

    installed: list[str] = field(default_factory=list)
    present: list[str] = field(default_factory=list)
    openclaw_bin: str = ""
    openclaw_version: str = "unknown"
    node_version: str = ""
    model_pulled: bool = False


# ── OS packages ──────────────────────────────────────────────

def missing_packages(host: Host, packages: tuple[str, ...] = OS_PACKAGES) -> list[str]:
    missing = []
    for pkg in packages:
        r = host.run(["dpkg-query", "-W", "-f=${Status}", pkg])
        if not (r.ok and "install ok installed" in r.stdout):
            missing.append(pkg)
    return missing


def _apt_env() -> dict[str, str]:
    return {"DEBIAN_FRONTEND": "noninteractive"}


def ensure_packages(cfg: ProvisioningConfig, host: Host, report: DependencyReport) -> None:
    missing = missing_packages(host)
    if not missing:
        logger.info("OS packages already installed: %s", " ".join(OS_PACKAGES))
        report.present.append("os-packages")
        return
    if not cfg.system:
        raise PreconditionError(
            f"Missing OS packages: {' '.join(missing)}",
            stage=STAGE,
            hint=f"sudo apt-get install -y {' '.join(missing)}",
        )
    logger.info("Installing missing OS packages: %s", " ".join(missing))
    host.run(["apt-get", "update", "-y"], env=_apt_env(), check=True, timeout=600)
    host.run(
        ["apt-get", "install", "-y", "--no-install-recommends", *missing],
        env=_apt_env(),
        check=True,
        timeout=900,
    )
    still = missing_packages(host, tuple(missing))
    if still:
        raise DependencyError(f"apt-get did not install: {' '.join(still)}", stage=STAGE)
    report.installed.extend(missing)


# ── Node.js ──────────────────────────────────────────────────

def node_major(host: Host) -> tuple[int | None, str]:
    """Return ``(major, raw_version)``; ``major`` is ``None`` when absent."""
    r = host.run(["node", "--version"])
    if not r.ok:
        return None, ""
    m = re.match(r"v?(\d+)", r.stdout)
    if not m:
        return None, r.stdout
    return int(m.group(1)), r.stdout


def ensure_node(cfg: ProvisioningConfig, host: Host, report: DependencyReport) -> None:
    major, raw = node_major(host)
    if major is not None and major >= NODE_MIN_MAJOR:
        logger.info("Node.js %s already satisfies >= %d", raw, NODE_MIN_MAJOR)
        report.node_version = raw
        report.present.append("nodejs")
        return

    found = f"found {raw}" if raw else "not installed"
    if not cfg.system:
        raise PreconditionError(
            f"Node.js >= {NODE_MIN_MAJOR} required ({found})",
            stage=STAGE,
            hint=f"Ask an administrator to install Node.js {NODE_MIN_MAJOR}: {NODESOURCE_SETUP}",
        )

    logger.info("Installing Node.js %d via NodeSource (%s)", NODE_MIN_MAJOR, found)
    host.run(
        ["bash", "-c", f"set -o pipefail; curl -fsSL --proto '=https' --tlsv1.2 {NODESOURCE_SETUP} | bash -"],
        env=_apt_env(),
        check=True,
        timeout=600,
    )
    host.run(["apt-get", "install", "-y", "nodejs"], env=_apt_env(), check=True, timeout=900)

    major, raw = node_major(host)
    if major is None or major < NODE_MIN_MAJOR:
        raise DependencyError(
            f"Node.js still below {NODE_MIN_MAJOR} after install ({raw or 'missing'})",
            stage=STAGE,
            hint="apt-cache policy nodejs",
        )
    report.node_version = raw
    report.installed.append("nodejs")


# ── Service user + directories ───────────────────────────────

def _ensure_dir(path: Path, mode: int) -> None:
    refuse_symlink(path, STAGE)
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, mode)


def ensure_user_and_dirs(cfg: ProvisioningConfig, host: Host) -> None:
    """Create the service account (system mode) and the directory layout."""
    if cfg.system:
        if host.user_exists(cfg.service_user):
            logger.info("User %s exists", cfg.service_user)
        else:
            host.run(
                [
                    "useradd", "--system", "--create-home",
                    "--home-dir", str(cfg.home),
                    "--shell", "/usr/sbin/nologin",
                    cfg.service_user,
                ],
                check=True,
            )
            logger.info("Created user %s with home %s", cfg.service_user, cfg.home)
        _ensure_dir(cfg.home, 0o750)
    else:
        refuse_symlink(cfg.home, STAGE)
        cfg.home.mkdir(parents=True, exist_ok=True)
    _ensure_dir(cfg.log_dir, 0o750)
    _ensure_dir(cfg.config_dir, 0o700)
    _ensure_dir(cfg.secrets_dir, 0o750 if cfg.system else 0o700)
    for path in (cfg.home, cfg.log_dir, cfg.config_dir):
        host.chown(path, cfg.service_user)
    if cfg.system:
        host.chown(cfg.secrets_dir, "root", cfg.service_user)


# ── OpenClaw ─────────────────────────────────────────────────

def find_openclaw(cfg: ProvisioningConfig, host: Host) -> str | None:
    """Locate the ``openclaw`` binary.

    npm installs often land outside the default ``PATH`` (especially
    under ``sudo``), so the local prefix and ``npm prefix -g`` are
    searched as well.
    """
    if cfg.openclaw_bin:
        return cfg.openclaw_bin if Path(cfg.openclaw_bin).exists() else None

    local = cfg.npm_prefix / "bin" / "openclaw"
    if local.exists():
        return str(local)

    on_path = host.which("openclaw")
    if on_path:
        return on_path

    r = host.run(["npm", "prefix", "-g"], user=cfg.service_user)
    if r.ok and r.stdout:
        return host.which("openclaw", path=str(Path(r.stdout) / "bin"))
    return None


def openclaw_version(cfg: ProvisioningConfig, host: Host, binary: str) -> str:
    r = host.run([binary, "--version"], user=cfg.service_user, env=cfg.service_env(), timeout=15)
    if r.ok and r.stdout:
        return r.stdout.splitlines()[0].strip()
    logger.warning("Could not detect OpenClaw version")
    return "unknown"


def ensure_openclaw(cfg: ProvisioningConfig, host: Host, report: DependencyReport) -> str:
    binary = find_openclaw(cfg, host)
    if binary:
        logger.info("openclaw already installed: %s", binary)
        report.present.append("openclaw")
    else:
        if cfg.openclaw_bin:
            raise PreconditionError(
                f"OPENCLAW_BIN={cfg.openclaw_bin} does not exist",
                stage=STAGE,
            )
        logger.info("Installing openclaw@latest into %s as %s …", cfg.npm_prefix, cfg.service_user)
        refuse_symlink(cfg.npm_prefix, STAGE)
        cfg.npm_prefix.mkdir(parents=True, exist_ok=True)
        host.chown(cfg.npm_prefix, cfg.service_user)
        host.run(
            ["npm", "install", "-g", "--prefix", str(cfg.npm_prefix), "openclaw@latest"],
            user=cfg.service_user,
            env={"HOME": str(cfg.home)},
            check=True,
            timeout=600,
        )
        binary = find_openclaw(cfg, host)
        if not binary:
            raise DependencyError(
                "OpenClaw installed but 'openclaw' was not found",
                stage=STAGE,
                hint=f"ls {cfg.npm_prefix / 'bin'}; npm prefix -g",
            )
        report.installed.append("openclaw")

    report.openclaw_bin = binary
    report.openclaw_version = openclaw_version(cfg, host, binary)
    logger.info("OpenClaw version: %s", report.openclaw_version)
    return binary


# ── Ollama ───────────────────────────────────────────────────

def list_models(cfg: ProvisioningConfig, host: Host) -> set[str]:
    """Model names known to the Ollama server (``/api/tags``)."""
    body = host.http_json(f"{cfg.ollama_url}/api/tags", timeout=5)
    names: set[str] = set()
    if isinstance(body, dict):
        for entry in body.get("models", []):
            if isinstance(entry, dict):
                name = entry.get("model") or entry.get("name", "")
                if name:
                    names.add(name)
    return names


def model_present(wanted: str, available: set[str]) -> bool:
    """Exact match, or ``name`` ≡ ``name:latest``."""
    if wanted in available:
        return True
    if ":" not in wanted:
        return f"{wanted}:latest" in available
    base, tag = wanted.split(":", 1)
    return tag == "latest" and base in available


def _ollama_reachable(cfg: ProvisioningConfig, host: Host) -> bool:
    try:
        list_models(cfg, host)
    except (ValueError, HTTPException):
        return False
    return True


def _ollama_diagnostic(cfg: ProvisioningConfig) -> str:
    if not cfg.ollama_is_local:
        return f"curl -sS {cfg.ollama_url}/api/tags"
    if cfg.system:
        return "systemctl status ollama --no-pager; journalctl -u ollama -n 50"
    return f"ollama serve   (then: curl -sS {cfg.ollama_url}/api/tags)"


def start_ollama(cfg: ProvisioningConfig, host: Host) -> None:
    if cfg.system:
        host.run(["systemctl", "enable", "--now", "ollama"], check=True)
    else:
        host.spawn(
            ["ollama", "serve"],
            log_path=cfg.log_dir / "ollama.log",
        )


def _reachable_once(cfg: ProvisioningConfig, host: Host) -> bool:
    try:
        return _ollama_reachable(cfg, host)
    except OSError:
        return False


def install_ollama(cfg: ProvisioningConfig, host: Host, report: DependencyReport) -> None:
    if not cfg.system:
        raise PreconditionError(
            "Ollama is not installed and user-mode installs cannot install it",
            stage=STAGE,
            hint=f"curl -fsSL {OLLAMA_INSTALL} | sudo sh",
        )
    logger.info("Installing Ollama via %s", OLLAMA_INSTALL)
    host.run(
        ["bash", "-c", f"set -o pipefail; curl -fsSL --proto '=https' --tlsv1.2 {OLLAMA_INSTALL} | sh"],
        check=True,
        timeout=900,
    )
    if not host.which("ollama"):
        raise DependencyError("Ollama installer finished but 'ollama' is not on PATH", stage=STAGE)
    report.installed.append("ollama")


def ensure_ollama(
    cfg: ProvisioningConfig,
    host: Host,
    report: DependencyReport,
    *,
    policy: RetryPolicy = OLLAMA_WAIT,
) -> None:
    """Make the Ollama API reachable, then make sure the model is there.

    A remote ``OLLAMA_URL`` is only polled; nothing is installed or
    started for it.
    """
    if not cfg.with_ollama:
        logger.info("Skipping Ollama (OC_WITH_OLLAMA=no)")
        return

    policy = RetryPolicy(policy.interval, policy.attempts, diagnostic=_ollama_diagnostic(cfg))

    if _reachable_once(cfg, host):
        logger.info("Ollama API already reachable at %s", cfg.ollama_url)
        report.present.append("ollama")
    elif cfg.ollama_is_local:
        if host.which("ollama"):
            report.present.append("ollama")
        else:
            install_ollama(cfg, host, report)
        logger.info("Ollama API not reachable yet, starting it")
        start_ollama(cfg, host)

    policy.wait(lambda: _ollama_reachable(cfg, host), f"Ollama API at {cfg.ollama_url}", stage=STAGE)
    ensure_model(cfg, host, report)


def ensure_model(cfg: ProvisioningConfig, host: Host, report: DependencyReport) -> None:
    """Pull ``cfg.model`` only when ``/api/tags`` does not list it."""
    if not cfg.model:
        return
    available = list_models(cfg, host)
    if model_present(cfg.model, available):
        logger.info("Model %s already present", cfg.model)
        return

    logger.info("Pulling model %s (this can take a while) …", cfg.model)
    try:
        body = host.http_json(
            f"{cfg.ollama_url}/api/pull",
            payload={"model": cfg.model, "stream": False},
            timeout=3600,
        )
    except (OSError, ValueError, HTTPException) as exc:
        raise DependencyError(
            f"Pulling {cfg.model} failed: {exc}",
            stage=STAGE,
            hint=f"ollama pull {cfg.model}",
        ) from exc
    status = body.get("status", "") if isinstance(body, dict) else ""
    if status != "success":
        raise DependencyError(
            f"Pulling {cfg.model} returned {body!r}",
            stage=STAGE,
            hint=f"ollama pull {cfg.model}",
        )
    report.model_pulled = True
    logger.info("Model %s pulled", cfg.model)


# ── Stage entry point ────────────────────────────────────────

def install_dependencies(cfg: ProvisioningConfig, host: Host) -> DependencyReport:
    report = DependencyReport()
    ensure_packages(cfg, host, report)
    ensure_node(cfg, host, report)
    ensure_user_and_dirs(cfg, host)
    ensure_openclaw(cfg, host, report)
    ensure_ollama(cfg, host, report)
    return report
