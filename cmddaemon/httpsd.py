"""Prometheus HTTP service discovery for the managed commands."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from cmddaemon.config import (
    ANNOTATIONS_APP_KEY,
    ANNOTATIONS_HOSTNAME_KEY,
    ANNOTATIONS_IP_KEY,
    ANNOTATIONS_METRICS_PATH_KEY,
    ANNOTATIONS_NAME_KEY,
    ANNOTATIONS_PORT_KEY,
)
from cmddaemon.daemon import Daemon, Status


@dataclass
class TargetGroup:
    """Targets that share one set of labels."""

    targets: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"targets": list(self.targets), "labels": dict(sorted(self.labels.items()))}


def discovery_targets(daemon: Daemon) -> list[TargetGroup]:
    """One target group per running command that serves metrics."""
    groups = []
    for dcmd in daemon.dcmds:
        annotations = dcmd.annotations
        if annotations is None:
            continue
        ip = annotations.get(ANNOTATIONS_IP_KEY, "")
        port = annotations.get(ANNOTATIONS_PORT_KEY, "")
        metrics_path = annotations.get(ANNOTATIONS_METRICS_PATH_KEY, "")
        if not metrics_path or not ip or not port:
            continue
        if dcmd.status != Status.RUNNING:
            continue
        groups.append(
            TargetGroup(
                targets=[f"{ip}:{port}"],
                labels={
                    ANNOTATIONS_NAME_KEY: annotations.get(ANNOTATIONS_NAME_KEY, ""),
                    "hostAdmIp": ip,
                    ANNOTATIONS_METRICS_PATH_KEY: metrics_path,
                    ANNOTATIONS_HOSTNAME_KEY: annotations.get(ANNOTATIONS_HOSTNAME_KEY, ""),
                    ANNOTATIONS_APP_KEY: annotations.get(ANNOTATIONS_APP_KEY, ""),
                },
            )
        )
    return groups


def discovery_json(daemon: Daemon) -> str:
    """The discovery document; "null" when there are no targets."""
    groups = discovery_targets(daemon)
    payload = [group.to_dict() for group in groups] if groups else None
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n"