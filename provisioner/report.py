"""
Run reporting.

Produces:
* Rich terminal tables for check results and config overrides.
* A final summary panel plus next-step instructions.
* A JSON run summary written next to the run log for later inspection.

Nothing printed or written here contains secret values: the summary
only carries file paths and actions, and the JSON text is scrubbed
with the same redactor the log handlers use.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .appconfig import ConfigReport, OverrideReport
from .config import ProvisioningConfig, describe
from .dependencies import DependencyReport
from .preflight import CheckResult, redactor
from .secret_files import SecretReport
from .service import ServiceReport
from .verify import VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Everything a run produced, stage by stage."""

    cfg: ProvisioningConfig
    preflight: list[CheckResult] = field(default_factory=list)
    dependencies: DependencyReport | None = None
    secrets: SecretReport | None = None
    config: ConfigReport | None = None
    service: ServiceReport | None = None
    verification: VerificationResult | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"config": describe(self.cfg), "run_log": str(self.cfg.run_log)}
        if self.dependencies:
            d["dependencies"] = {
                "installed": self.dependencies.installed,
                "present": self.dependencies.present,
                "openclaw_bin": self.dependencies.openclaw_bin,
                "openclaw_version": self.dependencies.openclaw_version,
                "node_version": self.dependencies.node_version,
                "model_pulled": self.dependencies.model_pulled,
            }
        if self.secrets:
            d["secrets"] = [
                {"name": o.name, "path": str(o.path), "action": o.action.value, "note": o.note}
                for o in self.secrets.outcomes
            ]
        if self.config:
            d["app_config"] = {
                "path": str(self.config.change.path),
                "changed": self.config.change.changed,
                "backup": str(self.config.change.backup) if self.config.change.backup else None,
                "auth_repaired": self.config.auth_repaired,
                "overrides": [
                    {"key": r.key, "ok": r.ok, "error": r.error}
                    for r in self.config.overrides.results
                ],
            }
        if self.service:
            d["service"] = {
                "unit": str(self.service.unit_path),
                "unit_changed": self.service.unit_changed,
                "supervised": self.service.supervised,
                "linger": self.service.linger,
            }
        if self.verification:
            d["verification"] = [
                {"name": c.name, "passed": c.passed, "message": c.message}
                for c in self.verification.checks
            ]
        return d


def _status(passed: bool) -> str:
    return "[green]✅[/green]" if passed else "[yellow]⚠️[/yellow]"


def print_checks(title: str, checks: list[CheckResult], console: Console | None = None) -> None:
    if console is None:
        console = Console()
    table = Table(title=title, show_lines=True)
    table.add_column("Check", style="bold")
    table.add_column("Status", justify="center", width=6)
    table.add_column("Details")
    table.add_column("Fix", style="dim")
    for c in checks:
        table.add_row(c.name, _status(c.passed), c.message, c.fix_hint or "-")
    console.print()
    console.print(table)


def print_overrides(report: OverrideReport, console: Console | None = None) -> None:
    if console is None:
        console = Console()
    table = Table(title="⚙️  Config overrides (best-effort)", show_lines=False)
    table.add_column("Key", style="cyan")
    table.add_column("Result", justify="center", width=8)
    table.add_column("Detail", style="dim")
    for r in report.results:
        table.add_row(r.key, "[green]ok[/green]" if r.ok else "[yellow]skipped[/yellow]", r.error or "")
    console.print()
    console.print(table)


def print_next_steps(cfg: ProvisioningConfig, telegram_enabled: bool, console: Console | None = None) -> None:
    if console is None:
        console = Console()
    scope = "" if cfg.system else "--user "
    lines = [
        f"[bold]Control UI:[/bold] http://127.0.0.1:{cfg.port}/",
    ]
    if cfg.bind == "loopback":
        lines += [
            "",
            "[bold]From another machine, use an SSH tunnel:[/bold]",
            f"  ssh -N -L {cfg.port}:127.0.0.1:{cfg.port} <user>@<this-host>",
        ]
    if telegram_enabled:
        lines += [
            "",
            "[bold]Telegram:[/bold] DM your bot.",
            f"  DM policy is '{cfg.dm_policy}'"
            + ("; approve the pairing code on first contact." if cfg.dm_policy == "pairing" else "."),
        ]
    else:
        lines += ["", "[bold]Telegram:[/bold] disabled (rerun with TELEGRAM_BOT_TOKEN to enable)."]
    lines += [
        "",
        "[bold]Logs:[/bold]",
        f"  journalctl {scope}-u {cfg.unit_name} -f",
        f"  provisioning log: {cfg.run_log}",
        "",
        "[bold]Uninstall:[/bold]",
        f"  systemctl {scope}disable --now {cfg.unit_name}",
        f"  rm -f {cfg.unit_path}",
        f"  systemctl {scope}daemon-reload",
    ]
    console.print()
    console.print(Panel("\n".join(lines), title="Next steps", border_style="cyan"))


def print_summary(summary: RunSummary, console: Console | None = None) -> None:
    if console is None:
        console = Console()
    if summary.config:
        print_overrides(summary.config.overrides, console)
    if summary.verification:
        print_checks("🔍 Verification", summary.verification.checks, console)

    healthy = summary.verification is None or summary.verification.all_passed
    text = "[green bold]Provisioning complete.[/green bold]"
    if summary.verification and not healthy:
        text += (
            f"\n[yellow]{summary.verification.summary}; the gateway is configured and "
            "started; see the hints above.[/yellow]"
        )
    console.print()
    console.print(Panel(text, border_style="green" if healthy else "yellow"))


def save_run_summary(summary: RunSummary, path: Path | None = None) -> Path:
    """Write the JSON summary (owner-only) and return its path."""
    if path is None:
        path = summary.cfg.maint_log_dir / f"provision-{summary.cfg.run_stamp}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    text = redactor.scrub(json.dumps(summary.to_dict(), indent=2))
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(text + "\n")
    return path
