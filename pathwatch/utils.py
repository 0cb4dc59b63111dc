"""
Periodic background worker.

PathWatch uses it as its mount-table change source: the worker only hands a
callback to the event loop at a fixed interval and never touches watcher
state itself.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class PeriodicWorker(threading.Thread):
    """
    Daemon thread calling `worker_fn(*args, **kwargs)` every `interval` seconds.

    The first call happens as soon as the thread starts. Exceptions raised by
    worker_fn are logged and the schedule goes on.
    """

    def __init__(self, worker_fn, interval, *args, name=None, **kwargs):
        super().__init__(name=name, daemon=True)
        self.worker_fn = worker_fn
        self.interval = interval
        self.args = args
        self.kwargs = kwargs
        self.stop_event = threading.Event()

    def run(self):
        logger.debug("%s: started with interval %s seconds", self.name, self.interval)
        while not self.stop_event.is_set():
            try:
                self.worker_fn(*self.args, **self.kwargs)
            except Exception as e:
                logger.exception("%s: error in periodic call: %s", self.name, e)
            if self.stop_event.wait(self.interval):
                break
        logger.debug("%s: stopped", self.name)

    def stop(self, timeout=None):
        """
        Ask the thread to finish.

        With a timeout, also wait up to that many seconds for the current
        call to return, so that no call happens after stop() returns.
        """
        self.stop_event.set()
        if timeout is not None and self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)


def spawn_periodic_worker(worker_fn, interval, *args, **kwargs):
    """
    Start and return a PeriodicWorker.

    Keyword arguments are passed to worker_fn, except `name` which names the
    thread.
    """
    worker = PeriodicWorker(worker_fn, interval, *args, **kwargs)
    worker.start()
    return worker
