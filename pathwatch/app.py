"""
Application core for PathWatch.

The Application owns the event loop, the watchers, their subscription
trees and the mount snapshot. Everything here runs on the loop thread;
signal-style entry points (request_*) only schedule work onto the loop.
"""

import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pathwatch.actions import ActionDispatcher
from pathwatch.config import DEFAULT_MOUNT_POLL_INTERVAL, ConfigError
from pathwatch.events import classify
from pathwatch.filters import EventFilter
from pathwatch.loop import (EventLoop, install_signal_handlers,
                            restore_signal_handlers)
from pathwatch.models import CREATED, DELETED
from pathwatch.mounts import MountReconciler
from pathwatch.subscriptions import InotifySubscriber, SubscriptionError
from pathwatch.tree import WatchTreeManager, depth_below, is_strictly_within
from pathwatch.utils import spawn_periodic_worker
from pathwatch.watcher import Watcher

MOUNT_WORKER_JOIN_TIMEOUT = 1.0


def null_logger() -> logging.Logger:
    logger = logging.getLogger("pathwatch.null")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


@dataclass
class AppContext:
    """State shared by every component, passed explicitly to each of them."""

    logger: logging.Logger = field(default_factory=null_logger)
    detached: bool = False
    stdout: Any = field(default_factory=lambda: sys.stdout)


class Application:
    """
    Runs a set of watchers.

    Args:
        context: AppContext with the logger and output settings.
        specs: initial list of WatcherSpec.
        spec_loader: callable returning a fresh list of WatcherSpec for
            reloads; it raises ConfigError on invalid configuration.
        loop: EventLoop to run on (a new one by default).
        subscriber_factory: builds the subscription primitive of a watcher.
        snapshot_source: returns the current MountSnapshot.
        mount_poll_interval: seconds between mount-table checks, 0 disables
            the background poller.
    """

    def __init__(
        self,
        context: AppContext,
        specs,
        spec_loader: Optional[Callable[[], list]] = None,
        loop: Optional[EventLoop] = None,
        subscriber_factory: Optional[Callable[[], Any]] = None,
        snapshot_source=None,
        mount_poll_interval: float = DEFAULT_MOUNT_POLL_INTERVAL,
    ):
        self.context = context
        self.spec_loader = spec_loader
        self.loop = loop or EventLoop(context.logger)
        self.subscriber_factory = subscriber_factory or (
            lambda: InotifySubscriber(context.logger)
        )
        self.mount_poll_interval = mount_poll_interval

        self.tree = WatchTreeManager(context)
        self.event_filter = EventFilter(context)
        self.dispatcher = ActionDispatcher(context)
        self.mounts = MountReconciler(
            context,
            self.tree,
            self.event_filter,
            self.dispatcher,
            snapshot_source=snapshot_source,
        )

        self.watchers: List[Watcher] = self._build_watchers(specs)
        self.started = False
        self._mount_worker = None
        self._previous_signals: Dict[int, Any] = {}

    @property
    def logger(self):
        return self.context.logger

    def _build_watchers(self, specs) -> List[Watcher]:
        return [Watcher(spec, self.subscriber_factory) for spec in specs]

    def get_watcher(self, name: str) -> Watcher:
        for watcher in self.watchers:
            if watcher.name == name:
                return watcher
        raise KeyError(f"no watcher named '{name}'")

    # Lifecycle

    def start(self):
        if self.started:
            self.logger.info("watchers already started")
            return

        self.logger.info("starting watchers")
        self.mounts.reset()
        if self.mount_poll_interval > 0:
            self._mount_worker = spawn_periodic_worker(
                self.loop.call_soon,
                self.mount_poll_interval,
                self.check_mounts,
                name="PW_MountPoller",
            )
        self.logger.info("mount watcher started")

        for watcher in self.watchers:
            self._start_watcher(watcher)
        self.started = True
        self.log_active_paths()

    def _start_watcher(self, watcher: Watcher):
        subscriber = watcher.open()
        fileno = getattr(subscriber, "fileno", None)
        if callable(fileno):
            self.loop.add_reader(fileno(), lambda: self._on_readable(watcher))
        try:
            self.tree.install_subtree(watcher, watcher.root, 0)
        except SubscriptionError as e:
            self.logger.error(f"{watcher.name}: failed to create file monitor: {e}")
        self.logger.info(f"{watcher.name}: watcher started")

    def stop(self):
        if not self.started:
            self.logger.info("watchers already stopped")
            return

        self.logger.info("stopping watchers")
        if self._mount_worker is not None:
            self._mount_worker.stop(timeout=MOUNT_WORKER_JOIN_TIMEOUT)
            self._mount_worker = None
        self.logger.info("mount watcher stopped")

        for watcher in self.watchers:
            self._stop_watcher(watcher)
        self.started = False

    def _stop_watcher(self, watcher: Watcher):
        self.tree.teardown(watcher)
        subscriber = watcher.subscriber
        fileno = getattr(subscriber, "fileno", None)
        if callable(fileno):
            self.loop.remove_reader(fileno())
        watcher.close()
        self.logger.info(f"{watcher.name}: watcher stopped")

    def reload(self):
        """
        Replace the whole watcher set from spec_loader.

        On ConfigError the running configuration is kept.
        """
        if self.spec_loader is None:
            self.logger.info("no configuration source, reload ignored")
            return False
        try:
            specs = self.spec_loader()
        except ConfigError as e:
            self.logger.error(f"error in configuration, aborting reload: {e}")
            self.logger.info("keeping the current configuration")
            return False

        was_started = self.started
        if was_started:
            self.stop()
        self.watchers = self._build_watchers(specs)
        self.logger.info(f"configuration reloaded ({len(self.watchers)} watchers)")
        if was_started:
            self.start()
        return True

    def shutdown(self):
        self.stop()
        self.dispatcher.reap()
        self.loop.stop()

    def list_active_paths(self, name: str) -> List[str]:
        return self.get_watcher(name).active_paths()

    def log_active_paths(self, watcher: Optional[Watcher] = None):
        if not self.started and watcher is None:
            self.logger.info("watchers stopped")
            return
        for item in [watcher] if watcher is not None else self.watchers:
            self.logger.info(f"{item.name}: listing monitors")
            for path in item.active_paths():
                self.logger.info(f"{item.name}: +-- path={path}")
            self.logger.info(f"{item.name}: end of list")

    # Signal-style entry points

    def request_reload(self):
        self.loop.call_soon(self._signal_reload)

    def request_start(self):
        self.loop.call_soon(self._signal_start)

    def request_stop(self):
        self.loop.call_soon(self._signal_stop)

    def request_shutdown(self):
        self.loop.call_soon(self._signal_shutdown)

    def _signal_reload(self):
        self.logger.info("reload requested, reloading configuration")
        self.reload()

    def _signal_start(self):
        self.logger.info("start requested, starting watchers")
        self.start()

    def _signal_stop(self):
        self.logger.info("stop requested, stopping watchers")
        self.stop()

    def _signal_shutdown(self):
        self.logger.info("shutdown requested, exiting")
        self.shutdown()

    def signal_handlers(self) -> Dict[int, Callable[[], None]]:
        handlers = {
            signal.SIGINT: self._signal_shutdown,
            signal.SIGTERM: self._signal_shutdown,
        }
        for name, handler in (
            ("SIGHUP", self._signal_reload),
            ("SIGUSR1", self._signal_start),
            ("SIGUSR2", self._signal_stop),
        ):
            if hasattr(signal, name):
                handlers[getattr(signal, name)] = handler
        return handlers

    def run(self):
        """Start the watchers and run the loop until shutdown."""
        self._previous_signals = install_signal_handlers(
            self.loop, self.signal_handlers(), self.logger
        )
        try:
            self.start()
            self.loop.run_forever()
        finally:
            self.stop()
            restore_signal_handlers(self._previous_signals)
            self._previous_signals = {}

    # Notifications

    def _on_readable(self, watcher: Watcher):
        if watcher.subscriber is None:
            return
        for raw in watcher.subscriber.read():
            try:
                self.handle_notification(watcher, raw)
            except Exception as e:
                self.logger.error(
                    f"{watcher.name}: failed to handle event ({raw.path}): {e}", exc_info=True
                )
        self.dispatcher.reap()

    def handle_notification(self, watcher: Watcher, raw):
        """Classify a raw notification, update the watch tree, filter and dispatch."""
        event = classify(watcher, raw, self.logger)
        if event is None:
            return None

        self._update_tree(watcher, event)

        if not self.event_filter.test(watcher, event):
            self.logger.debug(f"{watcher.name}: event ignored ({event})")
            return None

        self.dispatcher.dispatch(watcher, event)
        return event

    def _update_tree(self, watcher: Watcher, event):
        if event.kind == DELETED:
            if event.path == watcher.root:
                self.tree.remove_path(watcher, watcher.root)
            elif watcher.recursive:
                self.tree.remove_subtree(watcher, event.path)
            return

        if (
            event.kind == CREATED
            and watcher.recursive
            and is_strictly_within(event.path, watcher.root)
            and self._is_plain_directory(event.path)
        ):
            depth = depth_below(event.path, watcher.root)
            self.logger.debug(f"{watcher.name}: file depth to watcher path is '{depth}'")
            try:
                self.tree.install_subtree(watcher, event.path, depth)
            except SubscriptionError as e:
                self.logger.error(f"{watcher.name}: failed to create file monitor: {e}")

    @staticmethod
    def _is_plain_directory(path: str) -> bool:
        return os.path.isdir(path) and not os.path.islink(path)

    def check_mounts(self):
        if not self.started:
            return []
        try:
            fired = self.mounts.refresh(self.watchers)
        except OSError as e:
            self.logger.error(f"mount: failed to read the mount table: {e}")
            return []
        self.dispatcher.reap()
        return fired
