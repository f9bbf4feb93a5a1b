"""
Thin wrapper around the local machine.

All external commands, identity lookups, ownership changes and HTTP
calls go through :class:`Host` so that stages never touch
``subprocess`` or ``urllib`` directly.  Tests substitute a fake host
that records commands instead of running them.
"""

from __future__ import annotations

import grp
import json
import logging
import os
import pwd
import shutil
import signal
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from .errors import CommandError, PreconditionError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Host:
    """The real host: runs commands with :mod:`subprocess`."""

    def euid(self) -> int:
        return os.geteuid()

    def current_user(self) -> str:
        return pwd.getpwuid(os.geteuid()).pw_name

    def user_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def which(self, name: str, path: str | None = None) -> str | None:
        return shutil.which(name, path=path)

    def _wrap(self, cmd: list[str], user: str | None, env: dict[str, str] | None) -> list[str]:
        """Prefix *cmd* so it runs as *user* with extra *env* entries.

        Switching identity is only possible (and only needed) when we are
        root and the target user is someone else.
        """
        if user and self.euid() == 0 and user != "root":
            prefix = ["runuser", "-u", user, "--"]
            if env:
                prefix += ["env"] + [f"{k}={v}" for k, v in env.items()]
            return prefix + cmd
        return cmd

    def run(
        self,
        cmd: list[str],
        *,
        user: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = False,
        timeout: int = 120,
    ) -> CommandResult:
        """Run *cmd* and return a :class:`CommandResult`.

        Returns ``returncode == -1`` when the binary is missing or the
        command times out.  With ``check=True`` a non-zero exit raises
        :class:`CommandError` instead.
        """
        full = self._wrap(cmd, user, env)
        proc_env = os.environ.copy()
        if env:
            proc_env.update(env)
        logger.debug("$ %s", " ".join(full))
        try:
            r = subprocess.run(
                full,
                env=proc_env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
            result = CommandResult(r.returncode, r.stdout.strip(), r.stderr.strip())
        except FileNotFoundError:
            result = CommandResult(-1, "", f"Command not found: {full[0]}")
        except subprocess.TimeoutExpired:
            result = CommandResult(-1, "", f"Command timed out after {timeout}s")

        if result.stdout:
            logger.debug("stdout: %s", result.stdout)
        if result.stderr:
            logger.debug("stderr: %s", result.stderr)
        if check and not result.ok:
            raise CommandError(cmd, result.returncode, result.stderr)
        return result

    def spawn(
        self,
        cmd: list[str],
        *,
        user: str | None = None,
        env: dict[str, str] | None = None,
        log_path: Path | None = None,
    ) -> int:
        """Start *cmd* detached from this process and return its PID."""
        full = self._wrap(cmd, user, env)
        proc_env = os.environ.copy()
        if env:
            proc_env.update(env)
        out = open(log_path, "a") if log_path else subprocess.DEVNULL
        try:
            proc = subprocess.Popen(
                full,
                env=proc_env,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        finally:
            if log_path:
                out.close()
        logger.info("Started %s (pid %d)", cmd[0], proc.pid)
        return proc.pid

    def chown(self, path: Path, user: str, group: str | None = None) -> None:
        """Change ownership of *path* itself; symlinks are never followed."""
        if self.euid() != 0:
            return
        os.lchown(path, pwd.getpwnam(user).pw_uid, grp.getgrnam(group or user).gr_gid)

    # ── Processes ────────────────────────────────────────────
    def process_cmdline(self, pid: int) -> str | None:
        """Command line of a live process, or ``None`` if it is gone.

        Zombies report an empty command line and count as gone.
        """
        try:
            raw = Path(f"/proc/{pid}/cmdline").read_bytes()
        except OSError:
            return None
        return raw.replace(b"\0", b" ").decode(errors="replace").strip() or None

    def terminate(self, pid: int, grace: RetryPolicy = RetryPolicy(interval=0.5, attempts=20)) -> None:
        """SIGTERM *pid*, escalating to SIGKILL if it outlives *grace*."""
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        if grace.poll(lambda: self.process_cmdline(pid) is None, f"pid {pid} exit"):
            return
        logger.warning("pid %d ignored SIGTERM; sending SIGKILL", pid)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def port_open(self, port: int, address: str = "127.0.0.1") -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.settimeout(2)
            return sock.connect_ex((address, port)) == 0
        finally:
            sock.close()

    # ── HTTP ─────────────────────────────────────────────────
    def http_get(self, url: str, timeout: float = 5) -> int:
        """Return the HTTP status of ``GET url``.

        HTTP error statuses are returned, not raised; connection errors
        propagate as :class:`OSError`.
        """
        try:
            with urlopen(Request(url, method="GET"), timeout=timeout) as resp:
                return resp.status
        except HTTPError as exc:
            return exc.code

    def http_json(self, url: str, payload: dict[str, Any] | None = None, timeout: float = 10) -> Any:
        """``GET`` (or ``POST`` when *payload* is given) and decode JSON.

        Raises :class:`OSError` (``URLError`` included) on transport
        failure and :class:`ValueError` on an undecodable body.
        """
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        req = Request(url, data=data, headers=headers, method="POST" if data else "GET")
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())


def refuse_symlink(path: Path, stage: str) -> None:
    """Raise if *path* is a symlink.

    Paths under the service user's home are writable by that user, so a
    root run must never act through a link planted there.
    """
    if path.is_symlink():
        raise PreconditionError(
            f"{path} is a symlink (-> {os.readlink(path)}); refusing to follow it",
            stage=stage,
            hint=f"Inspect and remove {path}, then rerun",
        )
