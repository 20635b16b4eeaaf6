"""Daemon configuration: YAML loading and command generation."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import yaml

from cmddaemon.tools import Command, ip_from_hostname, make_command

ANNOTATIONS_NAME_KEY = "name"
ANNOTATIONS_IP_KEY = "ip"
ANNOTATIONS_PORT_KEY = "port"
ANNOTATIONS_METRICS_PATH_KEY = "metricsPath"
ANNOTATIONS_HOSTNAME_KEY = "hostname"
ANNOTATIONS_APP_KEY = "app"

DEFAULT_CONFIG = """cmds:
  - cmd: ./cmd/prometheusLinux/prometheus
    args: 
      - --web.listen-address
      - "0.0.0.0:9091"
      - --config.file
      - "./cmd/prometheusLinux/prometheus.yml"
      - --web.enable-lifecycle
      - --storage.tsdb.path
      - "./cmd/prometheusLinux/data1/"
      - --storage.tsdb.retention.time
      - 7d
    annotations:
      name: "prometheus" # defaults to the base name of cmd
      port: "9091" # must be filled in by hand
      hostname: "proxy-a" # defaults to the host name
      ip: "12.12.12.12" # defaults to the hosts-file entry for the host name
      metricsPath: "/metrics" # "" means the command serves no metrics
      app: "xieCloud" # application the command belongs to"""

_log = logging.getLogger(__name__)


class ConfigError(Exception):
    """The configuration could not be parsed."""


@dataclass
class CmdSpec:
    """One command entry of the configuration."""

    cmd: str = ""
    args: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class Conf:
    """The whole configuration."""

    cmds: list[CmdSpec] = field(default_factory=list)

    def accept(self, visitor: Optional[Callable[["Conf"], None]]) -> None:
        if visitor is None:
            return
        visitor(self)


def _scalar(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        raise ConfigError(f"{where}: expected a scalar, got {type(value).__name__}")
    return str(value)


def _cmd_spec(entry: Any, index: int) -> CmdSpec:
    if entry is None:
        return CmdSpec()
    if not isinstance(entry, dict):
        raise ConfigError(f"cmds[{index}]: expected a mapping")
    args = entry.get("args") or []
    if not isinstance(args, list):
        raise ConfigError(f"cmds[{index}].args: expected a list")
    annotations = entry.get("annotations") or {}
    if not isinstance(annotations, dict):
        raise ConfigError(f"cmds[{index}].annotations: expected a mapping")
    return CmdSpec(
        cmd=_scalar(entry.get("cmd"), f"cmds[{index}].cmd"),
        args=[_scalar(a, f"cmds[{index}].args") for a in args],
        annotations={
            _scalar(k, f"cmds[{index}].annotations"): _scalar(v, f"cmds[{index}].annotations")
            for k, v in annotations.items()
        },
    )


def unmarshal(data: bytes | str) -> Conf:
    """Parse a YAML configuration document."""
    try:
        doc = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ConfigError(f"unmarshal config failed: {exc}") from exc
    if doc is None:
        return Conf()
    if not isinstance(doc, dict):
        raise ConfigError("unmarshal config failed: top level must be a mapping")
    raw = doc.get("cmds") or []
    if not isinstance(raw, list):
        raise ConfigError("unmarshal config failed: cmds must be a list")
    return Conf(cmds=[_cmd_spec(entry, i) for i, entry in enumerate(raw)])


def generate_cmds(conf: Conf) -> tuple[list[Command], list[dict[str, str]]]:
    """Fill in default annotations and build one command per entry."""
    if not conf.cmds:
        return [], []
    conf.accept(with_hostname)
    conf.accept(with_ip)
    conf.accept(with_name)
    cmds = [make_command(spec.cmd, *spec.args) for spec in conf.cmds]
    return cmds, [spec.annotations for spec in conf.cmds]


def with_hostname(conf: Optional[Conf]) -> None:
    """Set the hostname annotation where it is empty."""
    if conf is None:
        return
    try:
        hostname = socket.gethostname()
    except OSError as exc:
        _log.error("Error getting hostname: %s", exc)
        return
    for spec in conf.cmds:
        if not spec.annotations.get(ANNOTATIONS_HOSTNAME_KEY):
            spec.annotations[ANNOTATIONS_HOSTNAME_KEY] = hostname


def with_ip(conf: Optional[Conf]) -> None:
    """Set the ip annotation from the hosts file where it is empty."""
    if conf is None:
        return
    try:
        hostname = socket.gethostname()
    except OSError as exc:
        _log.error("Error getting hostname: %s", exc)
        return
    try:
        adm_ip = ip_from_hostname(hostname)
    except (OSError, LookupError) as exc:
        _log.error("Error getting IP from hostname: %s", exc)
        return
    for spec in conf.cmds:
        if not spec.annotations.get(ANNOTATIONS_IP_KEY):
            spec.annotations[ANNOTATIONS_IP_KEY] = adm_ip


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def with_name(conf: Optional[Conf]) -> None:
    """Set the name annotation to the command's base name where it is empty."""
    if conf is None:
        return
    for spec in conf.cmds:
        if not spec.annotations.get(ANNOTATIONS_NAME_KEY):
            spec.annotations[ANNOTATIONS_NAME_KEY] = _base(spec.cmd)