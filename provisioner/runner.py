"""
Top-level provisioning orchestrator.

Stages run strictly in order; each must succeed before the next starts:

  1. Preflight      – resolve config, check identity, open the run log
  2. Dependencies   – OS packages, Node.js, service user, OpenClaw, Ollama
  3. Secrets        – gateway token + optional Telegram token files
  4. Config         – baseline ``openclaw.json`` + best-effort overrides
  5. Service        – systemd unit install/enable/(re)start
  6. Verify         – non-fatal checks, then summary + next steps

Any exception aborts the run.  :func:`main` reports the failing stage,
the ``file:line`` it was raised from and the run-log path, then exits
non-zero.  Nothing is rolled back; rerunning converges from whatever
state was left behind.
"""

from __future__ import annotations

import logging
import traceback
from pathlib import Path
from typing import Mapping

from rich.console import Console

from .appconfig import reconcile_config
from .config import ProvisioningConfig, describe, resolve_config
from .dependencies import install_dependencies
from .errors import ProvisionError
from .host import Host
from .preflight import run_preflight, setup_logging
from .report import RunSummary, print_checks, print_next_steps, print_summary, save_run_summary
from .secret_files import ensure_secrets
from .service import install_service
from .verify import verify_install

logger = logging.getLogger(__name__)


class _StageTracker:
    """Remembers which stage is running for the failure report."""

    def __init__(self, console: Console):
        self.console = console
        self.current = "preflight"

    def enter(self, name: str, title: str) -> None:
        self.current = name
        self.console.rule(f"[bold cyan]{title}[/bold cyan]")
        logger.debug("stage: %s", name)


def run_provisioner(
    *,
    config_path: str | Path | None = None,
    verbose: bool = False,
    host: Host | None = None,
    environ: Mapping[str, str] | None = None,
    console: Console | None = None,
    tracker: _StageTracker | None = None,
    cfg: ProvisioningConfig | None = None,
) -> RunSummary:
    """Run every stage and return the collected :class:`RunSummary`."""
    host = host or Host()
    console = console or Console()
    tracker = tracker or _StageTracker(console)

    # ── 1. Preflight ────────────────────────────────────────
    tracker.enter("preflight", "Preflight")
    setup_logging(None, verbose)
    if cfg is None:
        cfg = resolve_config(environ, config_path=config_path)
    preflight = run_preflight(cfg, host, verbose)
    logger.info("Provisioning start (%s mode) — log: %s", cfg.mode, cfg.run_log)
    logger.debug("config: %s", describe(cfg))
    print_checks("🔍 Pre-flight", preflight.checks, console)

    summary = RunSummary(cfg=cfg, preflight=preflight.checks)

    # ── 2. Dependencies ─────────────────────────────────────
    tracker.enter("dependencies", "Dependencies")
    summary.dependencies = install_dependencies(cfg, host)
    openclaw_bin = summary.dependencies.openclaw_bin

    # ── 3. Secrets ──────────────────────────────────────────
    tracker.enter("secrets", "Secrets")
    summary.secrets = ensure_secrets(cfg, host)
    telegram = summary.secrets.telegram_enabled

    # ── 4. Config ───────────────────────────────────────────
    tracker.enter("config", "OpenClaw config")
    summary.config = reconcile_config(cfg, host, openclaw_bin, telegram)

    # ── 5. Service ──────────────────────────────────────────
    tracker.enter("service", "Gateway service")
    summary.service = install_service(
        cfg, host, openclaw_bin,
        config_changed=summary.config.change.changed or summary.config.auth_repaired,
    )

    # ── 6. Verify ───────────────────────────────────────────
    tracker.enter("verify", "Verification")
    summary.verification = verify_install(
        cfg, host, openclaw_bin, supervised=summary.service.supervised,
    )

    print_summary(summary, console)
    print_next_steps(cfg, telegram, console)
    path = save_run_summary(summary)
    logger.info("Run summary saved to %s", path)
    return summary


def _failure_location(exc: BaseException) -> str:
    frames = traceback.extract_tb(exc.__traceback__)
    if not frames:
        return "unknown"
    last = frames[-1]
    return f"{Path(last.filename).name}:{last.lineno}"


def _run_log_path() -> str:
    for h in logging.getLogger().handlers:
        if isinstance(h, logging.FileHandler):
            return h.baseFilename
    return "(not yet created)"


def main(config_path: str | None = None, verbose: bool = False) -> int:
    """Run the provisioner and translate failures into an exit code."""
    console = Console()
    tracker = _StageTracker(console)
    try:
        run_provisioner(config_path=config_path, verbose=verbose, console=console, tracker=tracker)
    except KeyboardInterrupt:
        logger.error("Interrupted during stage '%s'. Log: %s", tracker.current, _run_log_path())
        return 130
    except ProvisionError as exc:
        stage = exc.stage or tracker.current
        logger.error(
            "[ERROR] stage '%s' failed at %s: %s. Log: %s",
            stage, _failure_location(exc), exc, _run_log_path(),
        )
        if exc.hint:
            logger.error("Try: %s", exc.hint)
        return 1
    except Exception as exc:
        logger.exception(
            "[ERROR] unexpected failure in stage '%s' at %s. Log: %s",
            tracker.current, _failure_location(exc), _run_log_path(),
        )
        return 1
    logger.info("Done")
    return 0

