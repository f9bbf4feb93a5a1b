#!/usr/bin/env python3
"""
CLI entry-point for the OpenClaw host provisioner.

The run is driven by environment variables (see ``provisioner/config.py``);
there are no subcommands.

Usage
-----
  # System-wide install (root), loopback-only gateway
  sudo GW_BIND=loopback TELEGRAM_BOT_TOKEN='123456:ABC…' python run_provisioner.py

  # Per-user install, no root
  OC_MODE=user GW_BIND=loopback python run_provisioner.py

  # Defaults from a YAML file, debug logging
  python run_provisioner.py --config provisioner.example.yaml --verbose
"""

from provisioner.cli import main

if __name__ == "__main__":
    main()
