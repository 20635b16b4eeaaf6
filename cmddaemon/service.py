"""Catalog service entries and their request bodies."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

_GO_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _json_bytes(payload: Any) -> bytes:
    """Compact JSON with the HTML-safe escaping catalog clients expect."""
    text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    for raw, escaped in _GO_ESCAPES.items():
        text = text.replace(raw, escaped)
    return text.encode("utf-8")


@dataclass
class Service:
    """A service offered by a node."""

    node_name: str = ""
    name: str = ""
    port: Any = 0
    ip: str = ""

    def _int_port(self) -> int:
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise TypeError(f"service port must be int, got {type(self.port).__name__}")
        return self.port

    def reg_request_body(self) -> bytes:
        """Body of a catalog register request."""
        service: dict[str, Any] = {"Service": self.name, "Port": self._int_port()}
        if self.ip:
            service["Address"] = self.ip
        payload: dict[str, Any] = {"Node": self.node_name}
        if self.ip:
            payload["Address"] = self.ip
        payload["Service"] = service
        return _json_bytes(payload)

    def dereg_request_body(self) -> bytes:
        """Body of a catalog deregister request."""
        return _json_bytes({"Node": self.node_name, "ServiceID": self.name})


def new_service(node_name: str, name: str, ip: str, port: Any) -> Service:
    """Build a service; a string port is turned into an int (0 if not numeric)."""
    if isinstance(port, bool):
        raise ValueError("port must be int or string")
    if isinstance(port, int):
        if port < 0 or port > 65535:
            raise ValueError("port must between 0 and 65535")
    elif isinstance(port, str):
        if port == "":
            raise ValueError("port must not be empty")
        try:
            port = int(port)
        except ValueError:
            port = 0
    else:
        raise ValueError("port must be int or string")
    return Service(node_name=node_name, name=name, port=port, ip=ip)