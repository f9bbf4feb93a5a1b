"""
Post-install verification.

Everything here is informational: a failing check is reported as a
warning and the run still succeeds.  The provisioning contract is
"configured and started", not "proven healthy".

Checks
------
1. Port      – something accepts TCP connections on 127.0.0.1:<port>
               (polled briefly; the gateway needs a few seconds to bind)
2. HTTP      – ``GET http://127.0.0.1:<port>/`` answers below 500
3. Unit      – ``systemctl is-active`` for the gateway unit
4. Status    – ``openclaw gateway status``
5. Doctor    – ``openclaw doctor``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from http.client import HTTPException

from .config import ProvisioningConfig
from .host import Host
from .preflight import CheckResult
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

PORT_WAIT = RetryPolicy(interval=1.0, attempts=10)


@dataclass
class VerificationResult:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def summary(self) -> str:
        passed = sum(1 for c in self.checks if c.passed)
        return f"{passed}/{len(self.checks)} verification checks passed"


def check_port_listening(cfg: ProvisioningConfig, host: Host, policy: RetryPolicy = PORT_WAIT) -> CheckResult:
    ok = policy.poll(lambda: host.port_open(cfg.port), f"port {cfg.port}")
    if ok:
        return CheckResult(name=f"Port {cfg.port}", passed=True, message="Listening on 127.0.0.1")
    return CheckResult(
        name=f"Port {cfg.port}",
        passed=False,
        message="Nothing listening on 127.0.0.1",
        fix_hint=f"ss -lntp | grep :{cfg.port}",
    )


def check_http(cfg: ProvisioningConfig, host: Host) -> CheckResult:
    url = f"http://127.0.0.1:{cfg.port}/"
    try:
        status = host.http_get(url, timeout=5)
    except (OSError, HTTPException) as exc:
        return CheckResult(name="HTTP", passed=False, message=f"{url}: {exc}", fix_hint=f"curl -v {url}")
    if status < 500:
        return CheckResult(name="HTTP", passed=True, message=f"{url} -> {status}")
    return CheckResult(name="HTTP", passed=False, message=f"{url} -> {status}", fix_hint=f"curl -v {url}")


def check_unit(cfg: ProvisioningConfig, host: Host) -> CheckResult:
    cmd = ["systemctl", *(() if cfg.system else ("--user",)), "is-active", cfg.unit_name]
    r = host.run(cmd, timeout=10)
    state = r.stdout or r.stderr or f"exit {r.returncode}"
    journal = f"journalctl {'' if cfg.system else '--user '}-u {cfg.unit_name} -n 50"
    return CheckResult(
        name="Unit",
        passed=r.ok,
        message=f"{cfg.unit_name}: {state}",
        fix_hint="" if r.ok else journal,
    )


def _openclaw_check(cfg: ProvisioningConfig, host: Host, openclaw_bin: str, name: str, args: list[str]) -> CheckResult:
    r = host.run([openclaw_bin, *args], user=cfg.service_user, env=cfg.service_env(), timeout=60)
    out = (r.stdout or r.stderr).splitlines()
    message = out[-1] if out else f"exit {r.returncode}"
    return CheckResult(
        name=name,
        passed=r.ok,
        message=message,
        fix_hint="" if r.ok else f"OPENCLAW_CONFIG_PATH={cfg.config_file} {openclaw_bin} {' '.join(args)}",
    )


def verify_install(
    cfg: ProvisioningConfig,
    host: Host,
    openclaw_bin: str,
    *,
    supervised: bool = True,
    port_policy: RetryPolicy = PORT_WAIT,
) -> VerificationResult:
    result = VerificationResult()
    result.checks.append(check_port_listening(cfg, host, port_policy))
    result.checks.append(check_http(cfg, host))
    if supervised:
        result.checks.append(check_unit(cfg, host))
    result.checks.append(_openclaw_check(cfg, host, openclaw_bin, "Gateway status", ["gateway", "status"]))
    result.checks.append(_openclaw_check(cfg, host, openclaw_bin, "Doctor", ["doctor"]))

    for c in result.checks:
        if c.passed:
            logger.info("✓ %s: %s", c.name, c.message)
        else:
            logger.warning("✗ %s: %s", c.name, c.message)
    return result
