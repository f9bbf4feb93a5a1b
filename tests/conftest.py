from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
from urllib.error import URLError

import pytest

from provisioner import preflight
from provisioner.config import resolve_config
from provisioner.dependencies import OS_PACKAGES
from provisioner.errors import CommandError
from provisioner.host import CommandResult, Host


@dataclass
class Call:
    cmd: list[str]
    user: str | None
    env: dict[str, str] | None


class FakeHost(Host):
    """In-memory host: tracks packages, services and Ollama state.

    Filesystem writes done by the provisioner itself (secrets, config,
    unit) still hit ``tmp_path``; only commands, identity, ownership and
    network calls are faked.
    """

    def __init__(self, *, euid: int = 0, user: str = "root"):
        self._euid = euid
        self._user = user
        self.users: set[str] = set()
        self.packages: set[str] = set(OS_PACKAGES)
        self.node_version: str | None = "v22.11.0"
        self.binaries: dict[str, str] = {"ollama": "/usr/local/bin/ollama"}
        self.ollama_up = True
        self.ollama_starts = True
        self.models: set[str] = set()
        self.pulls: list[str] = []
        self.user_bus = True
        self.linger = "no"
        self.gateway_running = False
        self.rejected_keys: set[str] = set()
        self.on_config_set: Callable[[str, str], None] | None = None
        self.commands: list[Call] = []
        self.spawned: list[list[str]] = []
        self.processes: dict[int, str] = {}
        self.terminated: list[int] = []
        self._next_pid = 4242
        self.chowns: list[tuple[Path, str, str | None]] = []

    # ── helpers for assertions ──
    def ran(self, *prefix: str) -> list[Call]:
        return [c for c in self.commands if tuple(c.cmd[: len(prefix)]) == prefix]

    def ran_openclaw(self, *args: str) -> list[Call]:
        return [
            c for c in self.commands
            if c.cmd[0].endswith("openclaw") and tuple(c.cmd[1: 1 + len(args)]) == args
        ]

    # ── Host interface ──
    def euid(self) -> int:
        return self._euid

    def current_user(self) -> str:
        return self._user

    def user_exists(self, name: str) -> bool:
        return name in self.users

    def which(self, name: str, path: str | None = None) -> str | None:
        return self.binaries.get(name)

    def chown(self, path: Path, user: str, group: str | None = None) -> None:
        self.chowns.append((Path(path), user, group))

    def port_open(self, port: int, address: str = "127.0.0.1") -> bool:
        return self.gateway_running

    def http_get(self, url: str, timeout: float = 5) -> int:
        if not self.gateway_running:
            raise ConnectionRefusedError(111, "Connection refused")
        return 200

    def http_json(self, url: str, payload: dict[str, Any] | None = None, timeout: float = 10) -> Any:
        if not self.ollama_up:
            raise URLError("[Errno 111] Connection refused")
        if url.endswith("/api/tags"):
            return {"models": [{"name": m, "model": m} for m in sorted(self.models)]}
        if url.endswith("/api/pull"):
            self.pulls.append(payload["model"])
            self.models.add(payload["model"])
            return {"status": "success"}
        raise URLError(f"unexpected url {url}")

    def spawn(self, cmd, *, user=None, env=None, log_path=None) -> int:
        self.spawned.append(list(cmd))
        if cmd[0] == "ollama" and self.ollama_starts:
            self.ollama_up = True
        if "gateway" in " ".join(cmd):
            self.gateway_running = True
        pid = self._next_pid
        self._next_pid += 1
        self.processes[pid] = " ".join(cmd)
        return pid

    def process_cmdline(self, pid: int) -> str | None:
        return self.processes.get(pid)

    def terminate(self, pid: int, grace=None) -> None:
        self.terminated.append(pid)
        self.processes.pop(pid, None)

    def run(self, cmd, *, user=None, env=None, check=False, timeout=120) -> CommandResult:
        self.commands.append(Call(list(cmd), user, dict(env) if env else None))
        result = self._dispatch(list(cmd))
        if check and not result.ok:
            raise CommandError(cmd, result.returncode, result.stderr)
        return result

    def _dispatch(self, cmd: list[str]) -> CommandResult:
        prog, args = cmd[0], cmd[1:]

        if prog == "dpkg-query":
            if args[-1] in self.packages:
                return CommandResult(0, "install ok installed")
            return CommandResult(1, "", f"dpkg-query: no packages found matching {args[-1]}")

        if prog == "apt-get":
            if args and args[0] == "install":
                names = [a for a in args[1:] if not a.startswith("-")]
                self.packages.update(names)
                if "nodejs" in names:
                    self.node_version = "v22.11.0"
            return CommandResult(0)

        if prog == "node":
            if self.node_version is None:
                return CommandResult(-1, "", "Command not found: node")
            return CommandResult(0, self.node_version)

        if prog == "bash" and args[:1] == ["-c"]:
            if "ollama.com/install.sh" in args[1]:
                self.binaries["ollama"] = "/usr/local/bin/ollama"
            return CommandResult(0)

        if prog == "useradd":
            self.users.add(args[-1])
            return CommandResult(0)

        if prog == "npm":
            if args[:2] == ["install", "-g"]:
                prefix = Path(args[args.index("--prefix") + 1])
                (prefix / "bin").mkdir(parents=True, exist_ok=True)
                (prefix / "bin" / "openclaw").write_text("#!/bin/sh\n")
                return CommandResult(0)
            return CommandResult(1, "", "npm: not configured")

        if prog == "systemctl":
            args = [a for a in args if a != "--user"]
            verb = args[0]
            if verb == "show-environment":
                return CommandResult(0, "PATH=/usr/bin") if self.user_bus else CommandResult(
                    1, "", "Failed to connect to bus: No medium found"
                )
            if verb == "enable" and "--now" in args and "ollama" in args:
                if self.ollama_starts:
                    self.ollama_up = True
                return CommandResult(0)
            if verb in ("start", "restart"):
                self.gateway_running = True
                return CommandResult(0)
            if verb == "is-active":
                return CommandResult(0, "active") if self.gateway_running else CommandResult(3, "inactive")
            return CommandResult(0)

        if prog == "loginctl":
            if args[0] == "show-user":
                return CommandResult(0, self.linger)
            if args[0] == "enable-linger":
                self.linger = "yes"
            return CommandResult(0)

        if prog.endswith("openclaw"):
            if args == ["--version"]:
                return CommandResult(0, "2026.1.0")
            if args[:2] == ["config", "set"]:
                key, value = args[2], args[3]
                if key in self.rejected_keys:
                    return CommandResult(1, "", f"Error: Unknown config key: {key}")
                if self.on_config_set:
                    self.on_config_set(key, value)
                return CommandResult(0)
            if args[:2] == ["gateway", "status"]:
                if self.gateway_running:
                    return CommandResult(0, "Gateway: running")
                return CommandResult(1, "", "Gateway: not running")
            if args == ["doctor"]:
                return CommandResult(0, "No issues found")
            return CommandResult(0)

        return CommandResult(0)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def user_host() -> FakeHost:
    return FakeHost(euid=1000, user="alice")


@pytest.fixture
def make_env(tmp_path):
    """Environment for a run rooted entirely under ``tmp_path``."""

    def _make(**overrides: Any) -> dict[str, str]:
        env = {
            "OC_MODE": "system",
            "OC_HOME": str(tmp_path / "home"),
            "OC_ETC": str(tmp_path / "etc"),
            "OC_LOG_DIR": str(tmp_path / "log"),
            "MAINT_LOG_DIR": str(tmp_path / "maint"),
            "OC_UNIT_DIR": str(tmp_path / "systemd"),
            "GW_BIND": "loopback",
        }
        env.update({k: str(v) for k, v in overrides.items()})
        return env

    return _make


@pytest.fixture
def make_cfg(make_env, tmp_path):
    def _make(**overrides: Any):
        return resolve_config(make_env(**overrides), current_user="alice", user_home=tmp_path / "alice")

    return _make


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr("provisioner.retry.time.sleep", lambda s: None)


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    preflight.setup_logging(None)
