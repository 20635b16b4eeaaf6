import io
import json
import threading
import time

import pytest
import responses

from cmddaemon.consul import Consul, new_service_list, service_name
from cmddaemon.daemon import Daemon, DaemonCmd, Status
from cmddaemon.node import Node
from cmddaemon.service import Service, new_service
from cmddaemon.tools import make_command

REGISTER_URL = "http://localhost:8500/v1/catalog/register"
DEREGISTER_URL = "http://localhost:8500/v1/catalog/deregister"


def _daemon(dcmds=()):
    return Daemon(threading.Event(), list(dcmds), None)


def _node():
    return Node(name="proxy-a", adm_ip="12.12.12.12")


def _consul(services=()):
    return Consul("localhost:8500", _node(), _daemon(), list(services), None)


def test_empty_address_rejected():
    with pytest.raises(ValueError, match="consuladdr is empty"):
        Consul("", _node(), _daemon(), [], None)


def test_consul_defaults():
    consul = _consul()
    assert consul.url == "http://localhost:8500"
    assert consul.dc == "dc1"


def test_service_name():
    assert service_name("prometheus", "9090", "42") == "prometheus:9090"
    assert service_name("prometheus", "", "42") == "prometheus@42"


def test_print_conf():
    services = [
        Service(name="prometheus", port="9090", ip="localhost"),
        Service(name="grafana", port="3000", ip="localhost"),
        Service(name="alertmanager", port="9093", ip="localhost"),
        Service(name="node-exporter", port="9100", ip="localhost"),
        Service(name="cadvisor", port="8080", ip="localhost"),
        Service(name="consul", port="8500", ip="localhost"),
    ]
    out = io.StringIO()
    _consul(services).print_conf(out)
    doc = json.loads(out.getvalue())
    assert doc == {
        "services": [
            {"name": "prometheus", "port": 9090, "address": "localhost"},
            {"name": "grafana", "port": 3000, "address": "localhost"},
            {"name": "alertmanager", "port": 9093, "address": "localhost"},
            {"name": "node-exporter", "port": 9100, "address": "localhost"},
            {"name": "cadvisor", "port": 8080, "address": "localhost"},
            {"name": "consul", "port": 8500, "address": "localhost"},
        ]
    }
    assert out.getvalue().startswith('\n{\n\t"services": [')


def test_print_conf_empty():
    out = io.StringIO()
    _consul().print_conf(out)
    assert json.loads(out.getvalue()) == {"services": []}


def test_register_puts_each_service():
    services = [
        new_service("proxy-a", "prom:9090", "12.12.12.12", 9090),
        new_service("proxy-a", "graf:3000", "12.12.12.12", 3000),
    ]
    consul = _consul(services)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.PUT, REGISTER_URL, status=200)
        assert consul.register() is None
        bodies = [json.loads(call.request.body) for call in rsps.calls]
    assert len(bodies) == 2
    assert [b["Service"]["Service"] for b in bodies] == ["prom:9090", "graf:3000"]
    assert [b["Service"]["Port"] for b in bodies] == [9090, 3000]


def test_register_failure_collects_errors():
    services = [new_service("n", "a:1", "1.1.1.1", 1), new_service("n", "b:2", "1.1.1.1", 2)]
    consul = _consul(services)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.PUT, REGISTER_URL, status=500)
        with pytest.raises(RuntimeError, match="register failed with status code: 500") as info:
            consul.register()
        call_count = len(rsps.calls)
    assert str(info.value).count("500") == 2
    assert call_count == 2


def test_deregister_url_and_body():
    consul = _consul([new_service("proxy-a", "prom:9090", "1.1.1.1", 9090)])
    with responses.RequestsMock() as rsps:
        rsps.add(responses.PUT, DEREGISTER_URL, status=200)
        assert consul.deregister() is None
        body = json.loads(rsps.calls[0].request.body)
    assert body == {
        "Node": "proxy-a",
        "ServiceID": "prom:9090",
    }


def test_new_service_list_skips_exited():
    dcmd = DaemonCmd(threading.Event(), make_command("echo", "hi"), {})
    assert dcmd.status == Status.EXITED
    assert new_service_list(_node(), _daemon([dcmd])) == []


def test_new_service_list_running_without_process():
    dcmd = DaemonCmd(threading.Event(), make_command("echo", "hi"), {})
    dcmd.status = Status.RUNNING
    with pytest.raises(RuntimeError, match="cmd.Process is nil"):
        new_service_list(_node(), _daemon([dcmd]))


def test_register_again_propagates_update_failure():
    dcmd = DaemonCmd(threading.Event(), make_command("echo"), {})
    dcmd.status = Status.RUNNING
    consul = Consul("localhost:8500", _node(), _daemon([dcmd]), [], None)
    with pytest.raises(RuntimeError, match="don't RegisterAgain"):
        consul.register_again()


def test_watch_reregisters_when_counts_change():
    daemon = _daemon()
    consul = Consul(
        "localhost:8500", _node(), daemon, [new_service("n", "s:1", "1.1.1.1", 1)], None
    )
    consul.check_interval = 0.02
    consul.refresh_interval = 60
    thread = threading.Thread(target=consul.watch, daemon=True)
    thread.start()
    daemon.dcmds.append(DaemonCmd(threading.Event(), make_command("echo"), {}))
    deadline = time.monotonic() + 3
    while consul.services and time.monotonic() < deadline:
        time.sleep(0.02)
    consul.stop_event.set()
    thread.join(timeout=3)
    assert consul.services == []
    assert not thread.is_alive()