"""Registering the managed commands as catalog services."""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, IO, Iterable, Optional
from urllib.parse import urlsplit

import requests

from cmddaemon.daemon import Daemon, Status
from cmddaemon.node import Node, _join_url
from cmddaemon.service import Service, new_service
from cmddaemon.tools import parse_port, pid_addr

_REGISTER_PATH = "/v1/catalog/register"
_DEREGISTER_PATH = "/v1/catalog/deregister"
_TIMEOUT = 10


def service_name(name: str, port: str, pid: str) -> str:
    """name:port, or name@pid when there is no port."""
    if port:
        return f"{name}:{port}"
    return f"{name}@{pid}"


def new_service_list(node: Node, daemon: Daemon) -> list[Service]:
    """One service per running command that listens on a TCP port."""
    services: list[Service] = []
    errors: list[str] = []
    listening: Optional[dict[str, str]] = None
    for dcmd in daemon.dcmds:
        if dcmd.status != Status.RUNNING:
            continue
        process = dcmd.cmd.process if dcmd.cmd is not None else None
        if process is None:
            errors.append(f"cmd.Process is nil: {dcmd.cmd}")
            continue
        if listening is None:
            try:
                listening = pid_addr()
            except RuntimeError as exc:
                raise RuntimeError(f"PidAddr err: {exc}") from exc
        pid = str(process.pid)
        addr = listening.get(pid)
        if addr is None:
            errors.append(f"pidaddr not found: {dcmd.cmd}")
            continue
        port = parse_port(addr)
        name = service_name(os.path.basename(dcmd.cmd.args[0]), port, pid)
        try:
            services.append(new_service(node.name, name, node.adm_ip, port))
        except ValueError as exc:
            raise ValueError(f"NewService err: {exc}") from exc
    if errors:
        raise RuntimeError("\n".join(errors))
    return services


class Consul:
    """A catalog agent the daemon's services are registered with."""

    check_interval = 60.0
    refresh_interval = 15 * 60.0

    def __init__(
        self,
        address: str,
        node: Node,
        daemon: Daemon,
        services: Optional[Iterable[Service]],
        logger: Optional[logging.Logger],
    ) -> None:
        if not address:
            raise ValueError("consuladdr is empty")
        url = "http://" + address
        try:
            urlsplit(url)
        except ValueError as exc:
            raise ValueError(f"url.Parse err: {exc}") from exc
        self.url = url
        self.dc = "dc1"
        self.node = node
        self.daemon = daemon
        self.services: list[Service] = list(services or [])
        self.logger = logger or logging.getLogger(__name__)
        self.stop_event = threading.Event()

    def _put_all(self, kind: str, path: str, body_of: Callable[[Service], bytes]) -> None:
        url = _join_url(self.url, path)
        errors: list[str] = []
        for svc in self.services:
            try:
                body = body_of(svc)
            except (TypeError, ValueError) as exc:
                errors.append(str(exc))
                continue
            self.logger.debug("%s req body: %s", kind, body.decode("utf-8"))
            try:
                resp = requests.put(
                    url,
                    data=body,
                    headers={"Content-Type": "application/json", "Connection": "close"},
                    timeout=_TIMEOUT,
                )
            except requests.RequestException as exc:
                errors.append(str(exc))
                continue
            if resp.status_code != 200:
                errors.append(f"{kind} failed with status code: {resp.status_code}")
                self.logger.debug("%s failed, resp body: %s", kind, resp.text)
                continue
            self.logger.info("%s service: %s successfully", kind.capitalize(), svc)
        if errors:
            raise RuntimeError("\n".join(errors))

    def register(self) -> None:
        """Register every service; errors of all services are raised together."""
        self._put_all("register", _REGISTER_PATH, Service.reg_request_body)

    def deregister(self) -> None:
        """Deregister every service; errors of all services are raised together."""
        self._put_all("deregister", _DEREGISTER_PATH, Service.dereg_request_body)

    def _watch_counts(self) -> None:
        running = self.daemon.running_count()
        exited = self.daemon.exited_count()
        while not self.stop_event.wait(self.check_interval):
            if running == self.daemon.running_count() and exited == self.daemon.exited_count():
                continue
            try:
                self.register_again()
            except Exception as exc:
                self.logger.error("RegisterAgain err: %s", exc)
                continue
            running = self.daemon.running_count()
            exited = self.daemon.exited_count()

    def _watch_refresh(self) -> None:
        while not self.stop_event.wait(self.refresh_interval):
            try:
                self.register_again()
            except Exception as exc:
                self.logger.error("RegisterAgain err: %s", exc)

    def watch(self) -> None:
        """Re-register when command states change and periodically; blocks until stopped."""
        threads = [
            threading.Thread(target=self._watch_counts, daemon=True),
            threading.Thread(target=self._watch_refresh, daemon=True),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def register_again(self) -> None:
        """Rebuild the service list, then deregister and register it."""
        try:
            self.update_services()
        except Exception as exc:
            raise RuntimeError(f"Updatesvclist err: {exc}, don't RegisterAgain") from exc
        errors: list[str] = []
        for step in (self.deregister, self.register):
            try:
                step()
            except RuntimeError as exc:
                errors.append(str(exc))
        if errors:
            raise RuntimeError("\n".join(errors))

    def update_services(self) -> None:
        self.services = new_service_list(self.node, self.daemon)

    def print_conf(self, out: IO[str]) -> None:
        """Write the services as a catalog service definition file."""
        items = []
        last = len(self.services) - 1
        for index, svc in enumerate(self.services):
            item = (
                "\n\t\t{\n"
                f'\t\t\t"name": "{svc.name}",\n'
                f'\t\t\t"port": {svc.port},\n'
                f'\t\t\t"address": "{svc.ip}"\n'
                "\t\t}"
            )
            if index < last:
                item += ","
            items.append(item)
        out.write('\n{\n\t"services": [\n\t\t' + "".join(items) + "\n\t]\n}")