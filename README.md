# cmddaemon

`cmddaemon` keeps a set of commands running. It reads them from a YAML file,
starts each one and starts again any that exits, waiting longer after each
restart. While it runs, a small HTTP server lets you reload, restart or stop
the daemon, list what the children listen on, read Prometheus metrics and
hand Prometheus a service-discovery target list.

It runs on POSIX systems only: it forks into the background, uses signals and
calls `lsof`, `ps`, `sh` and `git`.

## Installation

```
pip install cmddaemon
```

To run the test suite as well:

```
pip install "cmddaemon[test]"
pytest
```

## Getting started

Write a starting configuration to `./daemon.yml` (nothing is written if the
file already exists):

```
cmddaemon --config.createDefault
```

Edit it so that it names your own commands:

```yaml
cmds:
  - cmd: ./bin/exporter
    args:
      - --listen
      - "0.0.0.0:9100"
    annotations:
      name: "exporter"        # defaults to the base name of cmd
      port: "9100"            # set this if the command listens on a port
      hostname: "node-a"      # defaults to this machine's host name
      ip: "192.0.2.10"        # defaults to the host name's entry in /etc/hosts
      metricsPath: "/metrics" # leave empty if the command has no metrics
      app: "demo"             # groups commands that belong to one application
```

Check what will be run:

```
cmddaemon --printCmds
```

Then start the daemon:

```
cmddaemon --config.file ./daemon.yml --web.port 9090 --log.level info
```

The program forks; the parent returns at once. The background process starts
a new session, holds a lock on `daemon.pid` (with its pid written in it) and
sends its own output to `daemon.log`, both in the current directory. A second
daemon started from the same directory fails because the pid file is locked.

The children started at launch append their output to
`./log/<name>_<port>_<hash>.log`, where `<hash>` is a hash of the command name
and its sorted arguments. Children started after a `SIGHUP` reload have no log
directory set, and their output is discarded.

## Options

| Option | Default | Meaning |
| --- | --- | --- |
| `--config.createDefault` | off | write a default `daemon.yml` and exit |
| `--config.file` | `./daemon.yml` | configuration file to read |
| `--web.port` | `9090` | port for the HTTP API |
| `--log.level` | `info` | `debug`, `info`, `warn` or `error`; anything else means `info` |
| `-p`, `--printCmds` | off | print the commands from the configuration and exit |
| `--killCmds` | off | send `SIGTERM` to running processes whose command line matches a configured command, and exit |
| `-v`, `--version` | off | print the package and Python versions and exit |

If the configuration file cannot be read, cannot be parsed or lists no
commands, the program prints the reason and exits with status 1.

## Restart policy

A command that exits is started again, at most five times. The first restart
happens at once; each later one waits twice as long as the one before
(2, 4, 8 and 16 seconds). The restart budget of every command is cleared every
30 minutes. Every 15 minutes (the first time after 20) the daemon logs the
state, pid and restart count of each command.

## Signals

* `SIGHUP` re-reads the configuration file, stops every running child
  (`SIGTERM`, then a kill after 10 seconds) and starts the new set. If the file
  cannot be read or parsed, or lists no commands, nothing changes.
* `SIGTERM` ends the daemon; on the way out it sends `SIGTERM` to its whole
  process group.

## HTTP API

| Method | Path | Effect |
| --- | --- | --- |
| PUT | `/restart` | send `SIGHUP` to the daemon itself, which reloads as above (`?update` runs the update first) |
| PUT | `/reload` | send `SIGHUP` to every running child (`?update` runs the update first) |
| PUT | `/update` | run `git checkout master` and `git pull origin master` in the working directory, without `SSH_ASKPASS` |
| PUT | `/stop` | send `SIGTERM` to the daemon itself |
| any | `/list` | one line per listening child: `<port> <command>`; status 500 with `{"err":"No cmd to run."}` when nothing is found |
| any | `/health` | `cmdDaemon service is healthy` |
| GET | `/metrics` | Prometheus text format |
| GET | `/discovery` | Prometheus HTTP service-discovery targets |

The control endpoints answer with JSON of the form `{"v":"ok"}` or
`{"err":"<message>"}`.

### Metrics

* `daemon_cmd_status{name,port,hostname,ip,app}` – 1 while the command runs, 0 once it has exited
* `daemon_cmd_restart_total{name,port,hostname,ip,app}` – restarts per command
* `http_requests_total{method,endpoint,status_code}`,
  `http_request_duration_seconds{method,endpoint}` (histogram) and
  `http_request_error_total{method,endpoint,code}` – API traffic

### Service discovery

`/discovery` lists every running command that has non-empty `ip`, `port` and
`metricsPath` annotations, ready for Prometheus `http_sd_configs`. When there
are none, the body is `null`.

```json
[
  {
    "targets": ["192.0.2.10:9100"],
    "labels": {
      "app": "demo",
      "hostAdmIp": "192.0.2.10",
      "hostname": "node-a",
      "metricsPath": "/metrics",
      "name": "exporter"
    }
  }
]
```

## Using it as a library

The pieces can be used on their own:

```python
import logging
import threading

from cmddaemon.config import generate_cmds, unmarshal
from cmddaemon.daemon import Daemon, DaemonCmd
from cmddaemon.httpsd import discovery_json
from cmddaemon.promstats import Registry

with open("daemon.yml", "rb") as fh:
    conf = unmarshal(fh.read())

cmds, annotations = generate_cmds(conf)
stop = threading.Event()
dcmds = [DaemonCmd(stop, cmd, ann) for cmd, ann in zip(cmds, annotations)]
daemon = Daemon(stop, dcmds, logging.getLogger("supervisor"))
threading.Thread(target=daemon.run, daemon=True).start()

registry = Registry()
daemon.register_metrics(registry)
print(registry.expose())
print(discovery_json(daemon))

stop.set()  # stops restarting; running children are left alone
```

Other modules:

* `cmddaemon.limiter.Limiter` – the restart counter with doubling back-off.
* `cmddaemon.promstats` – a small metrics registry (`Counter`, `Gauge`,
  `Histogram`, `MetricFamily`, `Registry`) with text exposition.
* `cmddaemon.coordinator.Coordinator(logger, config_file, registry)` – loads a
  configuration file on `reload()` and calls the callbacks given to
  `subscribe()`; it records `daemon_config_last_reload_successful` and
  `daemon_config_last_reload_success_timestamp_seconds` in the registry.
* `cmddaemon.consul.Consul(address, node, daemon, services, logger)` –
  registers services in a Consul catalog with `register()`, `deregister()` and
  `register_again()`; `watch()` re-registers when commands start or exit and
  every 15 minutes; `print_conf(out)` writes a service definition file.
  `cmddaemon.node.new_node(adm_ip)` and `host_adm_ip(interfaces)` describe this
  host, and `new_service_list(node, daemon)` builds services from the running
  children's listening ports.
* `cmddaemon.svcmanager.Handler` – the operations behind the control endpoints.
* `cmddaemon.cli.create_app(manager, daemon, registry)` – the Flask
  application itself.

## What it does not do

* The command-line program does not register anything in Consul and does not
  use `Coordinator`; both are available only from Python.
* The HTTP server publishes no API description page and sets no CORS headers.
* The daemon does not reopen or rotate log files.