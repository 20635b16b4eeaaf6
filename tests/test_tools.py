from unittest import mock

import pytest

from cmddaemon.tools import (
    Command,
    hash_cmd,
    ip_from_hostname,
    make_command,
    parse_port,
    pid_addr,
)

LSOF_OUTPUT = (
    "COMMAND   PID USER   FD   TYPE DEVICE SIZE/OFF NODE NAME\n"
    "prom    1234 me    3u  IPv4 0x1      0t0  TCP *:9091 (LISTEN)\n"
    "graf    5678 me    7u  IPv6 0x2      0t0  TCP [::1]:3000 (LISTEN)\n"
)


@pytest.fixture
def hosts_file(tmp_path):
    path = tmp_path / "hosts"
    path.write_text(
        "# comment line myhost\n"
        "\n"
        "127.0.0.1 localhost\n"
        "lonely\n"
        "10.1.2.3 myhost alias\n"
    )
    return str(path)


def test_command_str_joins_path_and_args():
    cmd = make_command("./x", "a", "b")
    assert str(cmd) == "./x a b"
    assert cmd.args == ["./x", "a", "b"]
    assert cmd.path == "./x"


def test_make_command_keeps_path_with_separator():
    cmd = make_command("./cmd/prometheusLinux/prometheus", "--flag")
    assert cmd.path == "./cmd/prometheusLinux/prometheus"
    assert cmd.name == "./cmd/prometheusLinux/prometheus"


def test_ip_from_hostname_localhost(hosts_file):
    assert ip_from_hostname("localhost", hosts_file) == "127.0.0.1"


def test_ip_from_hostname_alias(hosts_file):
    assert ip_from_hostname("alias", hosts_file) == "10.1.2.3"


def test_ip_from_hostname_ignores_comments(hosts_file):
    assert ip_from_hostname("myhost", hosts_file) == "10.1.2.3"


def test_ip_from_hostname_non_existent(hosts_file):
    name = "this-hostname-is-very-unlikely-to-exist-in-hosts-file-abcdef12345"
    with pytest.raises(LookupError, match="文件中未找到主机名: " + name):
        ip_from_hostname(name, hosts_file)


def test_ip_from_hostname_empty(hosts_file):
    with pytest.raises(LookupError, match="文件中未找到主机名: $"):
        ip_from_hostname("", hosts_file)


def test_ip_from_hostname_missing_file(tmp_path):
    with pytest.raises(OSError, match="无法打开"):
        ip_from_hostname("localhost", str(tmp_path / "nope"))


def test_parse_port():
    assert parse_port("*:59869") == "59869"
    assert parse_port("[::1]:8080") == "8080"
    assert parse_port("noport") == "noport"


def test_pid_addr_parses_lsof():
    completed = mock.Mock(stdout=LSOF_OUTPUT)
    with mock.patch("subprocess.run", return_value=completed):
        result = pid_addr()
    assert result["1234"] == "*:9091"
    assert result["5678"] == "[::1]:3000"


def test_pid_addr_reports_failure():
    with mock.patch("subprocess.run", side_effect=FileNotFoundError("lsof")):
        with pytest.raises(RuntimeError, match="lsof err"):
            pid_addr()


def test_hash_cmd_known_value():
    assert hash_cmd(Command(path="a", args=["a"])) == "af63dc4c8601ec8c"


def test_hash_cmd_empty():
    assert hash_cmd(None) == ""
    assert hash_cmd(Command(path="x", args=[])) == ""


def test_hash_cmd_ignores_arg_order():
    first = make_command("mycmd", "--opt1", "val1", "--opt2", "val2")
    second = make_command("mycmd", "val2", "--opt2", "val1", "--opt1")
    assert hash_cmd(first) == hash_cmd(second)


def test_hash_cmd_depends_on_name():
    assert hash_cmd(make_command("echo", "hello")) != hash_cmd(make_command("ls", "hello"))
    assert hash_cmd(make_command("pwd")) == hash_cmd(make_command("pwd"))