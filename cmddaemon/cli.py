"""Command-line entry point: supervises the configured commands behind an HTTP API."""

from __future__ import annotations

import argparse
import collections
import fcntl
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from importlib import metadata
from typing import Iterable, Optional

from flask import Flask, Response, g, request

from cmddaemon.config import DEFAULT_CONFIG, Conf, ConfigError, generate_cmds, unmarshal
from cmddaemon.daemon import Daemon, DaemonCmd, Status
from cmddaemon.httpsd import discovery_json
from cmddaemon.promstats import MetricFamily, Registry
from cmddaemon.service import _json_bytes
from cmddaemon.svcmanager import Handler, SvcManager, SvcManagerResponse
from cmddaemon.tools import Command

PROJECT_NAME = "cmdDaemon"

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_ANY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_CHILD_STOP_TIMEOUT = 10.0
_STARTUP_WAIT = 5.0
_RELOAD_SETTLE = 10.0
_SHUTDOWN_WAIT = 5.0
_LOOP_POLL = 0.5


def _package_version() -> str:
    try:
        return metadata.version("cmddaemon")
    except metadata.PackageNotFoundError:
        return "unknown"


@dataclass
class ForkContext:
    """Detaches the program into a background process with a pid file and a log file."""

    pid_file_name: str = "daemon.pid"
    pid_file_perm: int = 0o644
    log_file_name: str = "daemon.log"
    log_file_perm: int = 0o644
    work_dir: str = "./"
    umask: int = 0o027
    _pid_fd: Optional[int] = field(default=None, init=False, repr=False)
    _pid_path: Optional[str] = field(default=None, init=False, repr=False)

    def reborn(self) -> Optional[int]:
        """Fork; return the child's pid in the parent and None in the child."""
        pid_path = os.path.abspath(self.pid_file_name)
        pid_fd = os.open(pid_path, os.O_RDWR | os.O_CREAT, self.pid_file_perm)
        try:
            fcntl.flock(pid_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(pid_fd)
            raise RuntimeError(f"pid file {pid_path} is locked: {exc}") from exc
        try:
            log_fd = os.open(
                self.log_file_name,
                os.O_WRONLY | os.O_CREAT | os.O_APPEND,
                self.log_file_perm,
            )
        except OSError:
            os.close(pid_fd)
            raise

        sys.stdout.flush()
        sys.stderr.flush()
        child = os.fork()
        if child > 0:
            os.close(log_fd)
            os.close(pid_fd)
            return child

        os.setsid()
        os.chdir(self.work_dir)
        os.umask(self.umask)
        devnull = os.open(os.devnull, os.O_RDONLY)
        os.dup2(devnull, 0)
        os.close(devnull)
        os.dup2(log_fd, 1)
        os.dup2(log_fd, 2)
        os.close(log_fd)
        os.ftruncate(pid_fd, 0)
        os.write(pid_fd, f"{os.getpid()}\n".encode())
        self._pid_fd = pid_fd
        self._pid_path = pid_path
        return None

    def release(self) -> None:
        """Remove and unlock the pid file held by this process, if any."""
        if self._pid_fd is None:
            return
        try:
            if self._pid_path:
                os.remove(self._pid_path)
        except OSError:
            pass
        os.close(self._pid_fd)
        self._pid_fd = None
        self._pid_path = None


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cmddaemon", description="Supervise configured commands.")
    parser.add_argument("--config.createDefault", dest="create_default", action="store_true",
                        help="Generate a default config file.")
    parser.add_argument("--config.file", dest="config_file", default="./daemon.yml",
                        help="Daemon configuration file name.")
    parser.add_argument("-v", "--version", dest="version", action="store_true",
                        help="Print version information.")
    parser.add_argument("--web.port", dest="web_port", default="9090", help="Port to listen.")
    parser.add_argument("--log.level", dest="log_level", default="info",
                        help="Log level. e.g. debug, info, warn, error")
    parser.add_argument("-p", "--printCmds", dest="print_cmds", action="store_true",
                        help="Print cmds parse from config.")
    parser.add_argument("--killCmds", dest="kill_cmds", action="store_true",
                        help="Kill all child processes from config.")
    return parser.parse_args(None if argv is None else list(argv))


def create_config_file(path: str = "daemon.yml") -> bool:
    """Write the default configuration unless the file exists; report whether it was written."""
    if os.path.exists(path):
        print(f"{path} existed")
        return False
    try:
        with open(path, "x", encoding="utf-8") as handle:
            handle.write(DEFAULT_CONFIG)
    except OSError as exc:
        print(f"create {path} file err: {exc}")
        return False
    print(f"{path} created.")
    return True


def init_conf(path: str) -> Conf:
    """Read and check the configuration file."""
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        raise ConfigError("Read config failed.") from exc
    try:
        conf = unmarshal(data)
    except ConfigError as exc:
        raise ConfigError("Unmarshal config failed.") from exc
    if not conf.cmds:
        raise ConfigError("No cmd found.")
    return conf


def new_logger(level: str | int = "info") -> logging.Logger:
    """A logger writing key details and the call site to standard output."""
    if isinstance(level, int):
        numeric = level
    else:
        numeric = _LEVELS.get(level, logging.INFO)
    logger = logging.getLogger("cmddaemon")
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "time=%(asctime)s level=%(levelname)s source=%(pathname)s:%(lineno)d msg=%(message)s"
    ))
    logger.handlers = [handler]
    logger.propagate = False
    logger.setLevel(numeric)
    return logger


def kill_cmd(cmd: Command) -> int:
    """Send SIGTERM to the running process whose command line matches; return its pid."""
    script = f'ps -eo pid,command | grep "{cmd}" | grep -v grep | awk \'{{print $1}}\''
    completed = subprocess.run(["sh", "-c", script], capture_output=True, text=True, check=True)
    output = completed.stdout
    if not output:
        raise RuntimeError("psgrep no output")
    pid = int(output.strip())
    os.kill(pid, signal.SIGTERM)
    print(f"kill {pid} successfully", end="")
    return pid


def create_daemon(stop_event: threading.Event, dcmds: Iterable[DaemonCmd],
                  logger: Optional[logging.Logger]) -> Daemon:
    return Daemon(stop_event, dcmds, logger)


def _json_response(status: int, body: SvcManagerResponse) -> Response:
    return Response(_json_bytes(body.to_dict()), status=status,
                    content_type="application/json; charset=utf-8")


def _text_response(status: int, text: str) -> Response:
    return Response(text, status=status, content_type="text/plain; charset=utf-8")


def create_app(manager: SvcManager, daemon: Daemon, registry: Registry,
               project_name: str = PROJECT_NAME) -> Flask:
    """The HTTP API managing the daemon, with request metrics registered in the registry."""
    logger = getattr(manager, "logger", None) or logging.getLogger(__name__)
    requests_total = MetricFamily("http_requests_total", "Total number of HTTP requests",
                                  "counter", ("method", "endpoint", "status_code"))
    request_duration = MetricFamily("http_request_duration_seconds",
                                    "Duration of HTTP requests in seconds",
                                    "histogram", ("method", "endpoint"))
    request_errors = MetricFamily("http_request_error_total",
                                  "Total number of HTTP request errors",
                                  "counter", ("method", "endpoint", "code"))
    registry.must_register(requests_total, request_duration, request_errors)

    app = Flask(project_name)

    @app.before_request
    def _start_timer() -> None:
        g._start = time.perf_counter()

    @app.after_request
    def _record(response: Response) -> Response:
        duration = time.perf_counter() - g.get("_start", time.perf_counter())
        method = request.method
        endpoint = request.url_rule.rule if request.url_rule is not None else ""
        code = str(response.status_code)
        requests_total.labels(method, endpoint, code).inc()
        request_duration.labels(method, endpoint).observe(duration)
        if response.status_code >= 400:
            request_errors.labels(method, endpoint, code).inc()
        return response

    def _update_first() -> Optional[Response]:
        if "update" not in request.args:
            return None
        logger.info("Update requested")
        try:
            manager.update()
        except Exception as exc:
            logger.error("Service update failed: %s", exc)
            return _json_response(500, SvcManagerResponse(err=f"update failed: {exc}"))
        logger.info("Service updated successfully")
        return None

    @app.route("/restart", methods=["PUT"])
    def restart() -> Response:
        failed = _update_first()
        if failed is not None:
            return failed
        try:
            manager.restart()
        except Exception as exc:
            logger.error("Service restart failed: %s", exc)
            return _json_response(500, SvcManagerResponse(err=f"restart failed: {exc}"))
        logger.info("Service restarted successfully")
        return _json_response(200, SvcManagerResponse(v="ok"))

    @app.route("/reload", methods=["PUT"])
    def reload() -> Response:
        failed = _update_first()
        if failed is not None:
            return failed
        try:
            manager.reload()
        except Exception as exc:
            return _json_response(500, SvcManagerResponse(err=str(exc)))
        return _json_response(200, SvcManagerResponse(v="ok"))

    @app.route("/list", methods=_ANY_METHODS)
    def list_cmds() -> Response:
        data = manager.list()
        if data is None:
            return _json_response(500, SvcManagerResponse(err="No cmd to run."))
        return Response(data, status=200, content_type="application/json")

    @app.route("/update", methods=["PUT"])
    def update() -> Response:
        try:
            manager.update()
        except Exception as exc:
            return _json_response(500, SvcManagerResponse(err=str(exc)))
        return _json_response(200, SvcManagerResponse(v="ok"))

    @app.route("/stop", methods=["PUT"])
    def stop() -> Response:
        try:
            manager.stop()
        except Exception as exc:
            return _json_response(500, SvcManagerResponse(err=str(exc)))
        return _json_response(200, SvcManagerResponse(v="ok"))

    @app.route("/health", methods=_ANY_METHODS)
    def health() -> Response:
        if manager.health():
            return _text_response(200, f"{project_name} service is healthy")
        return _text_response(500, f"{project_name} service is unhealthy")

    @app.route("/metrics", methods=["GET"])
    def metrics() -> Response:
        return Response(registry.expose(), status=200,
                        content_type="text/plain; version=0.0.4; charset=utf-8")

    @app.route("/discovery", methods=["GET"])
    def discovery() -> Response:
        return Response(discovery_json(daemon), status=200, content_type="application/json")

    return app


def _stop_children(daemon: Daemon, logger: logging.Logger) -> None:
    waiters = []
    for dcmd in daemon.dcmds:
        if dcmd.status == Status.EXITED:
            continue
        process = dcmd.cmd.process if dcmd.cmd is not None else None
        if process is None:
            continue
        try:
            os.kill(process.pid, signal.SIGTERM)
        except OSError as exc:
            logger.error("Kill failed: cmd=%s pid=%d error=%s", dcmd.cmd, process.pid, exc)

        def wait(proc=process) -> None:
            deadline = time.monotonic() + _CHILD_STOP_TIMEOUT
            while proc.poll() is None:
                if time.monotonic() >= deadline:
                    try:
                        proc.kill()
                    except OSError:
                        pass
                    return
                time.sleep(0.1)

        thread = threading.Thread(target=wait, daemon=True)
        thread.start()
        waiters.append(thread)
    for thread in waiters:
        thread.join()


def _serve(args: argparse.Namespace, conf: Conf) -> int:
    print("- - - - - - - - - - - - - - -")
    print(f"Daemon started {datetime.now().strftime(_TIME_FORMAT)}")

    logger = new_logger(args.log_level)
    logger.info("Daemon started. time=%s", datetime.now().strftime(_TIME_FORMAT))
    logger.info("Daemon config file: file=%s", args.config_file)

    cmds, annotations_list = generate_cmds(conf)
    if not cmds:
        logger.error("No cmd to run. Daemon existed.")
        return 1

    pending: collections.deque[int] = collections.deque()

    def on_signal(signum, _frame) -> None:
        pending.append(signum)

    signal.signal(signal.SIGHUP, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    stop_event = threading.Event()
    dcmds = [DaemonCmd(stop_event, cmd, ann) for cmd, ann in zip(cmds, annotations_list)]
    daemon = create_daemon(stop_event, dcmds, logger)
    logger.info("Daemon created.")
    logger.debug("daemon dcmds=%r", daemon.dcmds)
    threading.Thread(target=daemon.run, daemon=True).start()
    time.sleep(_STARTUP_WAIT)

    manager = Handler(logger, daemon)
    registry = Registry()
    daemon.register_metrics(registry)
    app = create_app(manager, daemon, registry, PROJECT_NAME)

    server_done = threading.Event()

    def run_server() -> None:
        try:
            app.run(host="0.0.0.0", port=int(args.web_port), threaded=True, use_reloader=False)
        except (OSError, ValueError, SystemExit) as exc:
            logger.error("mux.Run err: %s", exc)
        finally:
            server_done.set()

    threading.Thread(target=run_server, daemon=True).start()

    try:
        while True:
            if server_done.is_set():
                logger.info("Web server exited.")
                return 0
            if not pending:
                time.sleep(_LOOP_POLL)
                continue
            signum = pending.popleft()
            if signum == signal.SIGTERM:
                logger.warning("Catched a term sign, kill all child processes time=%s",
                               datetime.now().strftime(_TIME_FORMAT))
                return 0
            if signum != signal.SIGHUP:
                continue
            try:
                new_conf = init_conf(args.config_file)
            except ConfigError as exc:
                logger.error("Reload config failed: %s", exc)
                logger.info("Panic Recover. Nothing changed.")
                continue
            logger.info("Reloaded config.")
            new_cmds, new_annotations = generate_cmds(new_conf)
            if not new_cmds:
                logger.error("No cmd to run. Do not reload.")
                continue
            stop_event.set()
            _stop_children(daemon, logger)
            logger.info("Ctx canceled. All child processes killed.")
            stop_event = threading.Event()
            daemon.reload(stop_event, new_cmds, new_annotations)
            threading.Thread(target=daemon.run, daemon=True).start()
            time.sleep(_RELOAD_SETTLE)
    finally:
        stop_event.set()
        try:
            os.killpg(os.getpid(), signal.SIGTERM)
        except OSError:
            pass
        time.sleep(_SHUTDOWN_WAIT)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    if args.create_default:
        create_config_file("daemon.yml")
        return 0
    if args.version:
        print(PROJECT_NAME, _package_version())
        print("python version:", sys.version.split()[0])
        return 0

    try:
        conf = init_conf(args.config_file)
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return 1

    if args.print_cmds:
        cmds, _ = generate_cmds(conf)
        if not cmds:
            print("No cmd to print.")
            return 0
        for cmd in cmds:
            print(cmd)
        return 0

    if args.kill_cmds:
        cmds, _ = generate_cmds(conf)
        if not cmds:
            print("No cmd to kill.")
            return 0
        for cmd in cmds:
            try:
                kill_cmd(cmd)
            except Exception as exc:
                print(exc)
        return 0

    context = ForkContext()
    try:
        child = context.reborn()
    except (OSError, RuntimeError) as exc:
        print("Unable to run: ", exc, file=sys.stderr)
        return 1
    if child is not None:
        return 0
    try:
        return _serve(args, conf)
    finally:
        context.release()


if __name__ == "__main__":
    sys.exit(main())