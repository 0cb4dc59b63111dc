"""
Single-threaded event loop for PathWatch.

All watcher state is mutated from the thread running this loop. Readiness
callbacks (inotify descriptors) and scheduled callbacks are each run to
completion before the next one starts. call_soon() is the only entry point
meant for signal handlers and other threads: it queues the callback and
wakes the loop through a self-pipe.
"""

import logging
import os
import selectors
import signal
import threading
from collections import deque


class EventLoop:
    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self._selector = selectors.DefaultSelector()
        self._pending = deque()
        self._running = False
        self._closed = False
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, self._drain_wakeups)

    @property
    def running(self) -> bool:
        return self._running

    def add_reader(self, fd, callback):
        """Call callback() on the loop thread whenever fd is readable."""
        self._selector.register(fd, selectors.EVENT_READ, callback)

    def remove_reader(self, fd) -> bool:
        try:
            self._selector.unregister(fd)
        except (KeyError, ValueError):
            return False
        return True

    def call_soon(self, callback, *args):
        """Schedule callback(*args) on the loop thread."""
        self._pending.append((callback, args))
        try:
            os.write(self._wake_w, b"\0")
        except BlockingIOError:
            # Pipe full: the loop is already due to wake up.
            pass

    def run_once(self, timeout=None):
        """Wait up to timeout seconds for activity and process it."""
        if self._pending:
            timeout = 0
        for key, _ in self._selector.select(timeout):
            try:
                current = self._selector.get_key(key.fd)
            except KeyError:
                # Unregistered by an earlier callback of this batch.
                continue
            self._run(current.data)
        self._run_pending()

    def run_forever(self, timeout=1.0):
        self._running = True
        self.logger.debug("event loop started")
        try:
            while self._running:
                self.run_once(timeout)
        finally:
            self._running = False
            self.logger.debug("event loop stopped")

    def stop(self):
        self._running = False

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._selector.close()
        os.close(self._wake_r)
        os.close(self._wake_w)

    def _run_pending(self):
        # Callbacks queued while draining run on the next iteration.
        for _ in range(len(self._pending)):
            callback, args = self._pending.popleft()
            self._run(callback, *args)

    def _run(self, callback, *args):
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"error in event loop callback {callback!r}: {e}", exc_info=True)

    def _drain_wakeups(self):
        try:
            while os.read(self._wake_r, 4096):
                pass
        except BlockingIOError:
            pass


def install_signal_handlers(loop, handlers, logger=None):
    """
    Bridge OS signals onto the loop.

    handlers maps signal numbers to callables; each signal only schedules
    its callable with loop.call_soon(). SIGPIPE is logged and otherwise
    ignored. Does nothing outside the main thread, where Python cannot
    install signal handlers.
    """
    logger = logger or logging.getLogger(__name__)
    if threading.current_thread() is not threading.main_thread():
        logger.debug("not on the main thread, signal handlers not installed")
        return {}

    previous = {}

    def bridge(signum, frame):
        loop.call_soon(handlers[signum])

    for signum in handlers:
        previous[signum] = signal.signal(signum, bridge)

    if hasattr(signal, "SIGPIPE") and signal.SIGPIPE not in handlers:
        previous[signal.SIGPIPE] = signal.signal(
            signal.SIGPIPE,
            lambda signum, frame: loop.call_soon(
                logger.info, "SIGPIPE received, continuing execution"
            ),
        )
    return previous


def restore_signal_handlers(previous):
    for signum, handler in previous.items():
        if handler is not None:
            signal.signal(signum, handler)
