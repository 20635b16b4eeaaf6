"""Reloads the configuration file and hands it to subscribers."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from cmddaemon.config import Conf, ConfigError, unmarshal
from cmddaemon.promstats import MetricFamily, Registry

Subscriber = Callable[[Optional[Conf]], None]


class Coordinator:
    """Loads the configuration file and notifies subscribers on reload."""

    def __init__(self, logger: Optional[logging.Logger], config_file: str,
                 registerer: Registry) -> None:
        self.config_file = config_file
        self.config: Optional[Conf] = None
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._subscribers: list[Subscriber] = []

        success = MetricFamily(
            "daemon_config_last_reload_successful",
            "Whether the last configuration reload attempt was successful.",
            "gauge",
        )
        success_time = MetricFamily(
            "daemon_config_last_reload_success_timestamp_seconds",
            "Timestamp of the last successful configuration reload.",
            "gauge",
        )
        registerer.must_register(success, success_time)
        self._success = success.labels()
        self._success_time = success_time.labels()

    def subscribe(self, *args: Subscriber) -> None:
        with self._lock:
            self._subscribers.extend(args)

    def notify(self) -> None:
        """Call every subscriber with the current configuration; stop at the first failure."""
        for subscriber in list(self._subscribers):
            try:
                subscriber(self.config)
            except Exception as exc:
                self._logger.error("notify subscriber failed: %s", exc)
                raise

    def reload(self) -> None:
        """Reload the file and notify subscribers; a failed load is raised."""
        with self._lock:
            self._logger.info("reload config file %s", self.config_file)
            try:
                self.load_config()
            except (OSError, ConfigError) as exc:
                self._logger.error("load config file %s failed: %s", self.config_file, exc)
                self._success.set(0)
                raise
            try:
                self.notify()
            except Exception:
                self._success.set(0)
            self._success.set(1)
            self._success_time.set_to_current_time()

    def load_config(self) -> None:
        """Read and parse the configuration file."""
        with self._lock:
            try:
                with open(self.config_file, "rb") as handle:
                    data = handle.read()
            except OSError as exc:
                self._logger.error("read config file %s failed: %s", self.config_file, exc)
                raise
            try:
                conf = unmarshal(data)
            except ConfigError as exc:
                self._logger.error("unmarshal config file %s failed: %s", self.config_file, exc)
                raise
            self.config = conf