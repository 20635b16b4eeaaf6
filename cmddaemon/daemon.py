"""Supervision of child commands: start, wait for exit, restart with back-off."""

from __future__ import annotations

import contextlib
import logging
import os
import queue
import subprocess
import threading
from datetime import datetime
from enum import IntEnum
from typing import Iterable, Iterator, Optional

from cmddaemon.config import (
    ANNOTATIONS_APP_KEY,
    ANNOTATIONS_HOSTNAME_KEY,
    ANNOTATIONS_IP_KEY,
    ANNOTATIONS_NAME_KEY,
    ANNOTATIONS_PORT_KEY,
)
from cmddaemon.limiter import Limiter
from cmddaemon.promstats import MetricFamily, Registry
from cmddaemon.tools import Command, hash_cmd

_LABEL_NAMES = ("name", "port", "hostname", "ip", "app")
_LABEL_KEYS = (
    ANNOTATIONS_NAME_KEY,
    ANNOTATIONS_PORT_KEY,
    ANNOTATIONS_HOSTNAME_KEY,
    ANNOTATIONS_IP_KEY,
    ANNOTATIONS_APP_KEY,
)

# 1 = running, 0 = exited
DCMD_STATUS = MetricFamily("daemon_cmd_status", "Status of daemon cmd", "gauge", _LABEL_NAMES)
DCMD_RESTART_COUNT = MetricFamily(
    "daemon_cmd_restart_total",
    "Total number of restarts for each daemon cmd",
    "counter",
    _LABEL_NAMES,
)

_QUEUE_SIZE = 20
_LIMITER_RESET_PERIOD = 30 * 60
_FIRST_STATUS_REPORT = 20 * 60
_STATUS_REPORT_PERIOD = 15 * 60
_POLL = 0.2


class Status(IntEnum):
    EXITED = 0
    RUNNING = 1


class NoCmdFoundError(LookupError):
    """No managed command matches the one asked for."""

    def __init__(self, message: str = "no cmd found") -> None:
        super().__init__(message)


class LimitReachedError(RuntimeError):
    """A command has been restarted as often as its limiter allows."""

    def __init__(self, message: str = "restart limit reached") -> None:
        super().__init__(message)


class DaemonCmd:
    """A command managed by the daemon."""

    def __init__(
        self,
        stop_event: threading.Event,
        cmd: Optional[Command],
        annotations: Optional[dict[str, str]],
    ) -> None:
        self.stop_event = stop_event
        self.cmd = cmd
        self.annotations = annotations
        self.limiter = Limiter()
        self.status = Status.EXITED
        self.err: Optional[Exception] = None
        self.log_dir = ""
        self._lock = threading.Lock()

    def annotation(self, key: str) -> str:
        return (self.annotations or {}).get(key, "")

    def label_values(self) -> tuple[str, ...]:
        return tuple(self.annotation(key) for key in _LABEL_KEYS)

    def cmd_hash(self) -> str:
        """Hash of the command name and its sorted arguments."""
        return hash_cmd(self.cmd)

    def refresh(self) -> None:
        """Replace the command with a fresh, unstarted copy and clear the error."""
        with self._lock:
            old = self.cmd
            self.cmd = Command(path=old.path, args=[old.path, *old.args[1:]])
            self.err = None

    def _report(self, exited: "queue.Queue[DaemonCmd]") -> None:
        if self.stop_event.is_set():
            return
        exited.put(self)

    def start_and_wait(self, exited: "queue.Queue[DaemonCmd]") -> None:
        """Start the command, wait for it to exit, then put it on the exited queue."""
        cmd = self.cmd
        with contextlib.ExitStack() as stack:
            if self.log_dir:
                try:
                    os.makedirs(self.log_dir, mode=0o755, exist_ok=True)
                except OSError as exc:
                    self.err = RuntimeError(f"create log dir {self.log_dir} err: {exc}")
                    return
                log_path = os.path.join(
                    self.log_dir,
                    f"{self.annotation(ANNOTATIONS_NAME_KEY)}_"
                    f"{self.annotation(ANNOTATIONS_PORT_KEY)}_{self.cmd_hash()}.log",
                )
                try:
                    handle = stack.enter_context(open(log_path, "ab"))
                except OSError as exc:
                    self.err = RuntimeError(f"open log file {log_path} err: {exc}")
                    return
                cmd.stdout = handle
                cmd.stderr = handle

            try:
                process = subprocess.Popen(
                    cmd.args or [cmd.path],
                    executable=cmd.path,
                    stdin=subprocess.DEVNULL,
                    stdout=cmd.stdout if cmd.stdout is not None else subprocess.DEVNULL,
                    stderr=cmd.stderr if cmd.stderr is not None else subprocess.DEVNULL,
                    env=cmd.env,
                )
            except (OSError, ValueError) as exc:
                self.err = RuntimeError(f"{cmd} start err: {exc}")
                self._report(exited)
                return
            cmd.process = process
            self.status = Status.RUNNING

            code = process.wait()
            if code != 0:
                exit_code = code if code >= 0 else -1
                self.err = RuntimeError(
                    f"cmd: {cmd} exited with err: {self.err}, exitCode: {exit_code}"
                )
            self.status = Status.EXITED
        self._report(exited)


class DaemonCollector:
    """Exposes the status and restart count of every managed command."""

    def __init__(self, daemon: "Daemon") -> None:
        self.daemon = daemon

    def describe(self) -> list[str]:
        return [*DCMD_STATUS.describe(), *DCMD_RESTART_COUNT.describe()]

    def collect(self) -> Iterator[MetricFamily]:
        for dcmd in self.daemon.dcmds:
            DCMD_STATUS.labels(*dcmd.label_values()).set(int(dcmd.status))
        yield from DCMD_STATUS.collect()
        yield from DCMD_RESTART_COUNT.collect()


class Daemon:
    """Runs a set of commands and restarts them when they exit."""

    def __init__(
        self,
        stop_event: threading.Event,
        dcmds: Iterable[DaemonCmd],
        logger: Optional[logging.Logger],
    ) -> None:
        self.stop_event = stop_event
        self.dcmds: list[DaemonCmd] = list(dcmds)
        self.logger = logger or logging.getLogger(__name__)
        self._exited: "queue.Queue[DaemonCmd]" = queue.Queue(maxsize=_QUEUE_SIZE)
        self.set_log_dir("./log")

    def run(self) -> None:
        """Start every command and restart exited ones until the stop event is set."""
        stop = self.stop_event
        exited = self._exited
        for dcmd in self.dcmds:
            threading.Thread(target=dcmd.start_and_wait, args=(exited,), daemon=True).start()
        for dcmd in self.dcmds:
            DCMD_RESTART_COUNT.labels(*dcmd.label_values()).inc(0)

        threading.Thread(target=self._reset_loop, args=(stop,), daemon=True).start()
        threading.Thread(target=self._status_loop, args=(stop,), daemon=True).start()

        while not stop.is_set():
            try:
                dcmd = exited.get(timeout=_POLL)
            except queue.Empty:
                continue
            self.logger.warning("Command error: cmd=%s error=%s", dcmd.cmd, dcmd.err)
            self.logger.warning(
                "Restarting command: cmd=%s restarts=%d", dcmd.cmd, dcmd.limiter.count
            )
            threading.Thread(
                target=self._restart, args=(dcmd, stop, exited), daemon=True
            ).start()

    def _restart(
        self, dcmd: DaemonCmd, stop: threading.Event, exited: "queue.Queue[DaemonCmd]"
    ) -> None:
        limiter = dcmd.limiter
        delay = (limiter.next_time() - datetime.now(limiter.tz)).total_seconds()
        if stop.wait(max(0.0, delay)):
            return
        dcmd.refresh()
        if dcmd.limiter.inc():
            self.logger.warning("Command restarted: %s", dcmd.cmd)
            DCMD_RESTART_COUNT.labels(*dcmd.label_values()).inc()
            dcmd.start_and_wait(exited)
            return
        self.logger.error(
            "Command restart limit reached: cmd=%s error=%s", dcmd.cmd, LimitReachedError()
        )

    def _reset_loop(self, stop: threading.Event) -> None:
        while not stop.wait(_LIMITER_RESET_PERIOD):
            self.reset_limiters()
            self.logger.info("Reseted all cmd's limiter")

    def _status_loop(self, stop: threading.Event) -> None:
        wait = _FIRST_STATUS_REPORT
        while not stop.wait(wait):
            self.logger.info("Print all cmd's limiter")
            for dcmd in self.dcmds:
                if dcmd.status == Status.EXITED:
                    self.logger.error("Command exited: %s", dcmd.cmd)
                    continue
                process = dcmd.cmd.process if dcmd.cmd else None
                self.logger.info(
                    "Command status: cmd=%s pid=%s restarts=%d",
                    dcmd.cmd,
                    process.pid if process else None,
                    dcmd.limiter.count,
                )
            wait = _STATUS_REPORT_PERIOD

    def reset_limiters(self) -> None:
        for dcmd in self.dcmds:
            dcmd.limiter.reset()

    def reload(
        self,
        stop_event: threading.Event,
        cmds: Iterable[Command],
        annotations_list: Iterable[Optional[dict[str, str]]],
    ) -> None:
        """Replace the managed commands and the stop event; nothing is started."""
        self.dcmds = []
        while True:
            try:
                self._exited.get_nowait()
            except queue.Empty:
                break
        self._exited = queue.Queue(maxsize=_QUEUE_SIZE)
        self.stop_event = stop_event
        self.dcmds = [
            DaemonCmd(stop_event, cmd, annotations)
            for cmd, annotations in zip(cmds, annotations_list, strict=True)
        ]

    def set_log_dir(self, log_dir: str) -> None:
        for dcmd in self.dcmds:
            dcmd.log_dir = log_dir

    def exited_count(self) -> int:
        return sum(1 for dcmd in self.dcmds if dcmd.status == Status.EXITED)

    def running_count(self) -> int:
        return sum(1 for dcmd in self.dcmds if dcmd.status == Status.RUNNING)

    def find(self, cmd: Command) -> DaemonCmd:
        """Return the managed command with the same hash, or raise NoCmdFoundError."""
        target = hash_cmd(cmd)
        for dcmd in self.dcmds:
            if dcmd.cmd_hash() == target:
                return dcmd
        raise NoCmdFoundError()

    def register_metrics(self, registry: Optional[Registry]) -> None:
        if registry is None:
            raise ValueError("prometheus registerer is nil")
        registry.register(DaemonCollector(self))