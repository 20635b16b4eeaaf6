import ipaddress
import json
import socket
from collections import namedtuple
from unittest import mock

import pytest
import responses

from cmddaemon.node import Node, _join_url, host_adm_ip, new_node, sort_addresses

Addr = namedtuple("Addr", "family address")

REGISTER_URL = "http://localhost:8500/v1/catalog/register"


def test_str():
    assert str(Node(name="proxy-a", adm_ip="12.12.12.12")) == "proxy-a 12.12.12.12"


def test_new_node_uses_hostname():
    node = new_node("10.0.0.5")
    assert node.name == socket.gethostname()
    assert node.adm_ip == "10.0.0.5"
    assert node.skip_node_update is False


def test_join_url_keeps_trailing_slash():
    assert (
        _join_url("http://localhost:8500", "/v1/catalog/deregister/")
        == "http://localhost:8500/v1/catalog/deregister/"
    )


def test_register_sends_node_body():
    node = Node(name="proxy-a", adm_ip="12.12.12.12")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.PUT, REGISTER_URL, status=200)
        assert node.register("localhost:8500") is None
        assert len(rsps.calls) == 1
        body = json.loads(rsps.calls[0].request.body)
        content_type = rsps.calls[0].request.headers["Content-Type"]
    assert node.skip_node_update is True
    assert body == {"Node": "proxy-a", "Address": "12.12.12.12", "SkipNodeUpdate": True}
    assert content_type == "application/json"


def test_register_keeps_scheme_prefix():
    node = Node(name="n", adm_ip="1.1.1.1")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.PUT, REGISTER_URL, status=200)
        assert node.register("http://localhost:8500") is None
        url = rsps.calls[0].request.url
    assert url == REGISTER_URL
    assert node.skip_node_update is True


def test_register_failure_status():
    node = Node(name="n", adm_ip="1.1.1.1")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.PUT, REGISTER_URL, status=500)
        with pytest.raises(RuntimeError, match="node register failed with status code: 500"):
            node.register("localhost:8500")


def test_sort_addresses_orders_ascending():
    addrs = ["10.0.0.2", "9.255.0.1", "10.0.0.10"]
    result = sort_addresses(addrs)
    assert result == ["9.255.0.1", "10.0.0.2", "10.0.0.10"]
    assert sorted(addrs) != result  # numeric, not lexical


def test_sort_addresses_ipv4_before_ipv6():
    items = [ipaddress.ip_address("::1"), ipaddress.ip_address("255.255.255.255")]
    assert [str(a) for a in sort_addresses(items)] == ["255.255.255.255", "::1"]


def test_host_adm_ip_picks_smallest_non_loopback():
    table = {
        "eth0": [
            Addr(socket.AF_INET, "127.0.0.1"),
            Addr(socket.AF_INET, "10.0.0.20"),
            Addr(socket.AF_INET, "10.0.0.3"),
            Addr(socket.AF_INET6, "fe80::1"),
        ]
    }
    with mock.patch("psutil.net_if_addrs", return_value=table):
        assert host_adm_ip(["bond0", "eth0"]) == "10.0.0.3"


def test_host_adm_ip_first_existing_interface_wins():
    table = {
        "bond0": [Addr(socket.AF_INET, "10.0.0.9")],
        "eth0": [Addr(socket.AF_INET, "10.0.0.1")],
    }
    with mock.patch("psutil.net_if_addrs", return_value=table):
        assert host_adm_ip(["bond0", "eth0"]) == "10.0.0.9"


def test_host_adm_ip_no_interface():
    with mock.patch("psutil.net_if_addrs", return_value={}):
        with pytest.raises(LookupError):
            host_adm_ip(["eth0"])


def test_host_adm_ip_no_ip():
    table = {"eth0": [Addr(socket.AF_INET, "127.0.0.1")]}
    with mock.patch("psutil.net_if_addrs", return_value=table):
        with pytest.raises(LookupError, match="no ip found"):
            host_adm_ip(["eth0"])