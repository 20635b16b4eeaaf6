"""Service management operations behind the daemon's HTTP endpoints."""

from __future__ import annotations

import abc
import json
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlsplit

from cmddaemon.daemon import Daemon, DaemonCmd, Status
from cmddaemon.service import _json_bytes
from cmddaemon.tools import pid_addr

_SEPARATOR = "--------------------\n"


@dataclass
class SvcManagerResponse:
    """Reply of a management endpoint: a value or an error message."""

    v: str = ""
    err: str = ""

    def to_dict(self) -> dict[str, str]:
        result = {}
        if self.v:
            result["v"] = self.v
        if self.err:
            result["err"] = self.err
        return result


class SvcManager(abc.ABC):
    """Operations that manage the daemon and its child processes."""

    @abc.abstractmethod
    def restart(self) -> None:
        """Restart the daemon process and its child processes."""

    @abc.abstractmethod
    def reload(self) -> None:
        """Reload the child processes."""

    @abc.abstractmethod
    def list(self) -> Optional[bytes]:
        """List the listening port and command line of every child."""

    @abc.abstractmethod
    def update(self) -> None:
        """Update the configuration file."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop the daemon process."""

    @abc.abstractmethod
    def health(self) -> bool:
        """Whether the service is healthy."""


def port_from_addr(addr: str) -> str:
    """Port part of a host:port address; raises ValueError if there is none."""

    def fail(reason: str) -> ValueError:
        return ValueError(f"SplitHostPort err: address {addr}: {reason}")

    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        rest = addr[end + 1:]
        if not rest:
            raise fail("missing port in address")
        if not rest.startswith(":") or ":" in rest[1:]:
            raise fail("too many colons in address" if ":" in rest else "missing port in address")
        host = addr[1:end]
        port = rest[1:]
    else:
        colon = addr.rfind(":")
        if colon < 0:
            raise fail("missing port in address")
        host, port = addr[:colon], addr[colon + 1:]
        if ":" in host:
            raise fail("too many colons in address")
    if "[" in host or "]" in host or "[" in port or "]" in port:
        raise fail("unexpected bracket in address")
    return port


def _port_of(addr: str) -> Optional[str]:
    try:
        port = urlsplit("http://" + addr).port
    except ValueError:
        return None
    return "" if port is None else str(port)


def addr_cmd_map(dcmds: Iterable[DaemonCmd]) -> Optional[dict[str, str]]:
    """Map each listening address to the command line of the child holding it."""
    dcmds = list(dcmds)
    if not dcmds:
        return None
    try:
        listening = pid_addr()
    except RuntimeError as exc:
        raise RuntimeError(f"pidAddr err: {exc}") from exc
    result: dict[str, str] = {}
    for dcmd in dcmds:
        process = dcmd.cmd.process if dcmd.cmd is not None else None
        if process is None:
            continue
        addr = listening.get(str(process.pid))
        if addr is not None:
            result[addr] = str(dcmd.cmd)
    return result


def git_pull() -> None:
    """Check out master and pull it from origin without an SSH askpass helper."""
    try:
        subprocess.run(
            ["git", "checkout", "master"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"git checkout err: {exc}") from exc
    env = {k: v for k, v in os.environ.items() if "SSH_ASKPASS" not in f"{k}={v}"}
    try:
        subprocess.run(
            ["git", "pull", "origin", "master"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(str(exc)) from exc


class Handler(SvcManager):
    """Manages the daemon this process runs."""

    def __init__(self, logger: Optional[logging.Logger], daemon: Daemon) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.daemon = daemon

    def restart(self) -> None:
        """Send SIGHUP to this process."""
        os.kill(os.getpid(), signal.SIGHUP)

    def reload(self) -> None:
        """Send SIGHUP to every running child; failures are raised together."""
        if not self.daemon.dcmds:
            raise RuntimeError("no child processes")
        errors = []
        for dcmd in self.daemon.dcmds:
            if dcmd.status == Status.EXITED:
                continue
            process = dcmd.cmd.process if dcmd.cmd is not None else None
            if process is None:
                errors.append(f"cmd: {dcmd.cmd} has no process")
                continue
            try:
                os.kill(process.pid, signal.SIGHUP)
            except OSError as exc:
                errors.append(f"cmd: {dcmd.cmd} Pid: {process.pid} kill failed. {exc}")
        if errors:
            raise RuntimeError("\n".join(errors))

    def _lines(self, addr_cmd: dict[str, str]) -> list[str]:
        lines = []
        for addr, cmd in addr_cmd.items():
            port = _port_of(addr)
            if port is None:
                self.logger.error("Parse addr error: addr=%s", addr)
                try:
                    port = port_from_addr(addr)
                except ValueError as exc:
                    self.logger.error("portFromAddr error: %s", exc)
                    lines.append(f"{addr} {cmd}\n")
                    continue
            lines.append(f"{port} {cmd}\n")
        return lines

    def list(self) -> Optional[bytes]:
        """Lines of "port command"; None when nothing can be listed."""
        try:
            addr_cmd = addr_cmd_map(self.daemon.dcmds)
        except RuntimeError as exc:
            self.logger.error("AddrCmdMap error: %s", exc)
            return None
        if not addr_cmd:
            return None
        return "".join(self._lines(addr_cmd)).encode("utf-8")

    def update(self) -> None:
        try:
            git_pull()
        except RuntimeError as exc:
            self.logger.error("git pull error: %s", exc)
            raise
        self.logger.info("git pull success")

    def stop(self) -> None:
        """Send SIGTERM to this process."""
        os.kill(os.getpid(), signal.SIGTERM)

    def health(self) -> bool:
        return True

    def list_port_and_cmd(self) -> tuple[int, str]:
        """HTTP status and text body listing ports, commands and a summary."""
        try:
            addr_cmd = addr_cmd_map(self.daemon.dcmds)
        except RuntimeError as exc:
            self.logger.error("AddrCmdMap error: %s", exc)
            return 500, ""
        if addr_cmd is None:
            return 204, ""
        body = "".join(self._lines(addr_cmd))
        body += _SEPARATOR
        body += f"All {len(self.daemon.dcmds)}, List {len(addr_cmd)}"
        return 200, body


Endpoint = Callable[[Any], SvcManagerResponse]


def _action_endpoint(action: Callable[[], None]) -> Endpoint:
    def endpoint(request: Any = None) -> SvcManagerResponse:
        try:
            action()
        except Exception as exc:
            return SvcManagerResponse(err=str(exc))
        return SvcManagerResponse(v="ok")

    return endpoint


def make_restart_endpoint(manager: SvcManager) -> Endpoint:
    return _action_endpoint(manager.restart)


def make_reload_endpoint(manager: SvcManager) -> Endpoint:
    return _action_endpoint(manager.reload)


def make_list_endpoint(manager: SvcManager) -> Endpoint:
    def endpoint(request: Any = None) -> SvcManagerResponse:
        data = manager.list() or b""
        return SvcManagerResponse(v=data.decode("utf-8", errors="replace"))

    return endpoint


def make_update_endpoint(manager: SvcManager) -> Endpoint:
    return _action_endpoint(manager.update)


def make_stop_endpoint(manager: SvcManager) -> Endpoint:
    return _action_endpoint(manager.stop)


def encode_response(response: Any) -> str:
    """JSON text of a response, ending with a newline."""
    if isinstance(response, SvcManagerResponse):
        response = response.to_dict()
    return _json_bytes(response).decode("utf-8") + "\n"


def decode_request(request: Any) -> None:
    """Management requests carry no body."""
    return None


__all__ = [
    "Handler",
    "SvcManager",
    "SvcManagerResponse",
    "addr_cmd_map",
    "decode_request",
    "encode_response",
    "git_pull",
    "make_list_endpoint",
    "make_reload_endpoint",
    "make_restart_endpoint",
    "make_stop_endpoint",
    "make_update_endpoint",
    "port_from_addr",
    "json",
]