"""
Command-line parsing for ``openclaw-provision``.

The run itself is driven by environment variables (see ``config.py``);
the only flags are a YAML defaults file and verbosity.
"""

from __future__ import annotations

import argparse
import sys

from .runner import main as run


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="🦞 Provision an OpenClaw gateway + Ollama on this host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment (all optional unless noted):
  OC_MODE=system|user         install scope (default: system, needs root)
  GW_BIND=loopback|lan|tailnet|custom   gateway bind mode (required)
  GW_PORT=18789               gateway port
  GW_AUTH=token|password      gateway auth mode
  TELEGRAM_BOT_TOKEN=…        enables the Telegram channel
  OLLAMA_URL / OLLAMA_MODEL   inference endpoint and model
  OC_LINGER=auto|yes|no       user-mode linger handling
        """,
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML file with default values for the environment variables",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug-level console logging (the run log is always debug)",
    )
    args = parser.parse_args(argv)

    sys.exit(run(config_path=args.config, verbose=args.verbose))

