"""The catalog node this host registers as."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Iterable, TypeVar, Union
from urllib.parse import urlsplit, urlunsplit

import psutil
import requests

from cmddaemon.service import _json_bytes

_REGISTER_PATH = "/v1/catalog/register"
_TIMEOUT = 10

_Addr = TypeVar("_Addr", bound=Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address])


def _join_url(base: str, path: str) -> str:
    """Append a path to a URL's path, keeping a trailing slash of the path."""
    parts = urlsplit(base)
    joined = parts.path.rstrip("/") + "/" + path.lstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, joined, parts.query, parts.fragment))


@dataclass
class Node:
    """A catalog node: host name and management address."""

    name: str
    adm_ip: str
    skip_node_update: bool = False

    def __str__(self) -> str:
        return f"{self.name} {self.adm_ip}"

    def _body(self) -> bytes:
        payload: dict = {"Node": self.name, "Address": self.adm_ip}
        if self.skip_node_update:
            payload["SkipNodeUpdate"] = True
        return _json_bytes(payload)

    def register(self, consul_addr: str) -> None:
        """Register only the node with the catalog at the given address."""
        if not consul_addr.startswith("http://"):
            consul_addr = "http://" + consul_addr
        try:
            url = _join_url(consul_addr, _REGISTER_PATH)
        except ValueError as exc:
            raise ValueError(f"node url.Parse err: {exc}") from exc
        self.skip_node_update = True
        try:
            resp = requests.put(
                url,
                data=self._body(),
                headers={"Content-Type": "application/json", "Connection": "close"},
                timeout=_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"node client.Do err: {exc}") from exc
        if resp.status_code != 200:
            raise RuntimeError(f"node register failed with status code: {resp.status_code}")


def new_node(adm_ip: str) -> Node:
    """A node named after this host."""
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = ""
    return Node(name=hostname, adm_ip=adm_ip)


def host_adm_ip(interfaces: Iterable[str]) -> str:
    """Smallest non-loopback IPv4 address of the first existing interface named."""
    names = list(interfaces)
    available = psutil.net_if_addrs()
    chosen = next((name for name in names if name in available), None)
    if chosen is None:
        raise LookupError(f"no such network interface: {', '.join(names)}")
    found = []
    for addr in available[chosen]:
        if addr.family != socket.AF_INET:
            continue
        try:
            ip = ipaddress.IPv4Address(addr.address)
        except ValueError:
            continue
        if not ip.is_loopback:
            found.append(ip)
    if not found:
        raise LookupError("no ip found")
    return str(sort_addresses(found)[0])


def sort_addresses(addresses: Iterable[_Addr]) -> list[_Addr]:
    """Sort addresses in ascending order, IPv4 before IPv6."""

    def key(addr: _Addr) -> tuple[int, int]:
        ip = ipaddress.ip_address(str(addr))
        return ip.version, int(ip)

    return sorted(addresses, key=key)