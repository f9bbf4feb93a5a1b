"""
systemd unit installer.

The unit is rendered from the run configuration, written only when its
text changed, and handed to systemd (``daemon-reload``, ``enable``,
``start``/``restart``).  After hand-off the provisioner never manages
the gateway process itself, except for a user-scoped install
on a host without a user session bus, where the gateway is launched
detached (tracked by ``gateway.pid`` in the log directory so a rerun
does not start a second copy) and the operator is told to enable linger.

The secret never appears in the unit text: ``ExecStart`` reads the
secret file when the process launches.
"""

from __future__ import annotations

import logging
import os
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .config import ProvisioningConfig
from .host import Host

logger = logging.getLogger(__name__)

STAGE = "service"


def gateway_command(cfg: ProvisioningConfig, openclaw_bin: str) -> str:
    """Shell command line that starts the gateway.

    ``$(cat …)`` is evaluated by the shell at launch, so the token is
    read from disk each time the service (re)starts.
    """
    secret_flag = "--token" if cfg.auth_mode == "token" else "--password"
    parts = [
        "exec",
        shlex.quote(openclaw_bin),
        "gateway",
        "--port", str(cfg.port),
        "--bind", cfg.bind,
        "--auth", cfg.auth_mode,
        secret_flag,
        f'"$(cat {shlex.quote(str(cfg.gateway_token_file))})"',
    ]
    return " ".join(parts)


def _escape_for_single_quotes(cmd: str) -> str:
    return cmd.replace("'", "'\\''")


def render_unit(cfg: ProvisioningConfig, openclaw_bin: str) -> str:
    """Return the text of ``openclaw-gateway.service``."""
    cmd = _escape_for_single_quotes(gateway_command(cfg, openclaw_bin))
    # systemd expands $ and % itself; double them so bash sees them verbatim
    cmd = cmd.replace("%", "%%").replace("$", "$$")

    lines = [
        "[Unit]",
        "Description=OpenClaw Gateway" + (" (system)" if cfg.system else " (user)"),
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        "Type=simple",
    ]
    if cfg.system:
        lines += [
            f"User={cfg.service_user}",
            f"Group={cfg.service_user}",
        ]
    lines += [
        f"WorkingDirectory={cfg.home}",
        "",
        "# Environment (non-secret)",
        f"Environment=OPENCLAW_CONFIG_PATH={cfg.config_file}",
        f"Environment=OPENCLAW_HOME={cfg.home}",
        "",
        "# Secret read from its file at start time, never stored here",
        f"ExecStart=/bin/bash -c '{cmd}'",
        "",
        "Restart=always",
        "RestartSec=3",
        "TimeoutStopSec=20",
        "",
        "# Hardening",
        "NoNewPrivileges=true",
        "PrivateTmp=true",
        "UMask=0077",
    ]
    if cfg.system:
        lines += [
            "ProtectSystem=strict",
            "ProtectHome=true",
            f"ReadWritePaths={cfg.home} {cfg.log_dir}",
        ]
    lines += [
        "",
        "[Install]",
        "WantedBy=" + ("multi-user.target" if cfg.system else "default.target"),
        "",
    ]
    return "\n".join(lines)


# ── systemctl helpers ────────────────────────────────────────

def _systemctl(cfg: ProvisioningConfig, *args: str) -> list[str]:
    return ["systemctl", *(() if cfg.system else ("--user",)), *args]


def user_bus_available(cfg: ProvisioningConfig, host: Host) -> bool:
    r = host.run(_systemctl(cfg, "show-environment"), timeout=10)
    return r.ok


def write_unit(cfg: ProvisioningConfig, text: str) -> bool:
    """Write the unit if its content differs; return ``True`` if written."""
    path = cfg.unit_path
    if path.exists() and path.read_text() == text:
        logger.info("Unit unchanged: %s", path)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.fchmod(fd, 0o644)
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.info("Wrote unit %s", path)
    return True


# ── Linger ───────────────────────────────────────────────────

def linger_enabled(cfg: ProvisioningConfig, host: Host) -> bool:
    r = host.run(["loginctl", "show-user", cfg.service_user, "-p", "Linger", "--value"], timeout=10)
    return r.ok and r.stdout.strip() == "yes"


def ensure_linger(cfg: ProvisioningConfig, host: Host) -> str:
    """Apply ``OC_LINGER`` for user-scoped installs; return a status word."""
    if cfg.system:
        return "n/a"
    if cfg.linger == "no":
        logger.warning(
            "Linger not enabled (OC_LINGER=no): the gateway stops when %s logs out",
            cfg.service_user,
        )
        return "skipped"
    if cfg.linger == "auto" and linger_enabled(cfg, host):
        logger.info("Linger already enabled for %s", cfg.service_user)
        return "enabled"
    r = host.run(["loginctl", "enable-linger", cfg.service_user], timeout=15)
    if r.ok:
        logger.info("Enabled linger for %s", cfg.service_user)
        return "enabled"
    logger.warning(
        "Could not enable linger (%s). To keep the gateway running after logout: "
        "sudo loginctl enable-linger %s",
        r.stderr or f"exit {r.returncode}",
        cfg.service_user,
    )
    return "failed"


# ── Stage entry point ────────────────────────────────────────

@dataclass
class ServiceReport:
    unit_path: Path
    unit_changed: bool
    supervised: bool
    linger: str = "n/a"
    foreground_pid: int | None = None


def gateway_pidfile(cfg: ProvisioningConfig) -> Path:
    return cfg.log_dir / "gateway.pid"


def _running_gateway(cfg: ProvisioningConfig, host: Host) -> int | None:
    """Pid recorded by an earlier unsupervised launch, if still a gateway."""
    pidfile = gateway_pidfile(cfg)
    try:
        pid = int(pidfile.read_text().strip())
    except (OSError, ValueError):
        return None
    cmdline = host.process_cmdline(pid)
    if cmdline is None or "gateway" not in cmdline:
        logger.debug("Stale gateway pidfile %s (pid %d)", pidfile, pid)
        return None
    return pid


def _start_unsupervised(cfg: ProvisioningConfig, host: Host, openclaw_bin: str, *, restart: bool) -> int:
    logger.warning(
        "No systemd user session bus; starting the gateway outside systemd. "
        "It will not survive logout or reboot; enable linger "
        "(sudo loginctl enable-linger %s) and rerun to install the unit.",
        cfg.service_user,
    )
    previous = _running_gateway(cfg, host)
    if previous is not None:
        if not restart:
            logger.info("Gateway already running unsupervised (pid %d)", previous)
            return previous
        logger.info("Stopping previous unsupervised gateway (pid %d)", previous)
        host.terminate(previous)
    cfg.log_dir.mkdir(parents=True, exist_ok=True)
    pid = host.spawn(
        ["/bin/bash", "-c", gateway_command(cfg, openclaw_bin)],
        env=cfg.service_env(),
        log_path=cfg.log_dir / "gateway.log",
    )
    gateway_pidfile(cfg).write_text(f"{pid}\n")
    return pid


def install_service(
    cfg: ProvisioningConfig,
    host: Host,
    openclaw_bin: str,
    *,
    config_changed: bool = False,
) -> ServiceReport:
    text = render_unit(cfg, openclaw_bin)
    unit_changed = write_unit(cfg, text)
    restart = unit_changed or config_changed
    report = ServiceReport(unit_path=cfg.unit_path, unit_changed=unit_changed, supervised=True)

    if not cfg.system:
        report.linger = ensure_linger(cfg, host)
        if not user_bus_available(cfg, host):
            report.supervised = False
            report.foreground_pid = _start_unsupervised(cfg, host, openclaw_bin, restart=restart)
            return report

    host.run(_systemctl(cfg, "daemon-reload"), check=True)
    host.run(_systemctl(cfg, "enable", cfg.unit_name), check=True)
    action = "restart" if restart else "start"
    host.run(_systemctl(cfg, action, cfg.unit_name), check=True)
    logger.info("%s %s (%s)", "Restarted" if action == "restart" else "Started", cfg.unit_name, cfg.mode)
    return report
