"""Process helpers: command descriptions, listening sockets, hosts lookup, hashing."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import IO, Optional

_SPACE = re.compile(r"\s+")

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = (1 << 64) - 1


@dataclass
class Command:
    """A program to run: its resolved path and full argument vector (name first)."""

    path: str
    args: list[str]
    env: Optional[dict[str, str]] = None
    stdout: Optional[IO] = field(default=None, repr=False)
    stderr: Optional[IO] = field(default=None, repr=False)
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.args[0] if self.args else self.path

    def __str__(self) -> str:
        return " ".join([self.path, *self.args[1:]])


def make_command(name: str, *args: str) -> Command:
    """Describe a command; a bare name is looked up on PATH."""
    path = name
    if os.sep not in name and "/" not in name:
        path = shutil.which(name) or name
    return Command(path=path, args=[name, *args])


def _parse_lsof(output: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for line in output.split("\n"):
        fields = _SPACE.split(line)
        if len(fields) < 2:
            continue
        result[fields[1]] = fields[-2]
    return result


def pid_addr() -> dict[str, str]:
    """Map each pid that listens on TCP to its listening address (host:port)."""
    try:
        completed = subprocess.run(
            ["lsof", "-Pi", "TCP", "-s", "TCP:LISTEN"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"lsof err: {exc}") from exc
    return _parse_lsof(completed.stdout)


def parse_port(addr: str) -> str:
    """Return what follows the last colon of an address."""
    return addr[addr.rfind(":") + 1:]


def ip_from_hostname(hostname: str, hosts_file: str = "/etc/hosts") -> str:
    """Find the address a hosts file gives for a hostname."""
    try:
        with open(hosts_file, encoding="utf-8", errors="replace") as handle:
            for line in handle:
                line = line.rstrip("\r\n")
                if line.startswith("#") or not line.strip():
                    continue
                fields = line.split()
                if len(fields) < 2:
                    continue
                if hostname in fields[1:]:
                    return fields[0]
    except OSError as exc:
        raise OSError(f"无法打开 {hosts_file} 文件: {exc}") from exc
    raise LookupError(f"在 {hosts_file} 文件中未找到主机名: {hostname}")


def _fnv1a64(data: bytes) -> int:
    value = _FNV64_OFFSET
    for byte in data:
        value ^= byte
        value = (value * _FNV64_PRIME) & _MASK64
    return value


def hash_cmd(cmd: Optional[Command]) -> str:
    """FNV-1a hash of a command's name and its sorted arguments, in hex."""
    if cmd is None or not cmd.args:
        return ""
    name, *rest = cmd.args
    if not rest:
        return format(_fnv1a64(name.encode()), "x")
    text = name + " " + " ".join(sorted(rest))
    return format(_fnv1a64(text.encode()), "x")