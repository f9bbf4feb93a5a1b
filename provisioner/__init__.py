"""
OpenClaw Host Provisioner
=========================
Idempotent, privilege-aware provisioning of an OpenClaw gateway with a
local Ollama runtime on a single Debian-based host.

Modules
-------
- config        – environment / YAML resolution into ProvisioningConfig
- host          – command execution, identity and HTTP access
- retry         – bounded fixed-interval retry policy
- errors        – fatal error taxonomy
- preflight     – identity check, run log, port check
- dependencies  – OS packages, Node.js, OpenClaw, Ollama + model
- secret_files  – gateway / Telegram token files
- appconfig     – openclaw.json reconciler + best-effort overrides
- service       – systemd unit installer, linger handling
- verify        – post-install checks
- report        – rich console output + JSON run summary
- runner        – top-level orchestrator
- cli           – argument parsing for the console script
"""

__version__ = "0.1.0"
