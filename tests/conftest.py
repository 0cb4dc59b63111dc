"""
Shared fixtures for the PathWatch test-suite.
"""

import io
import logging
import os

import pytest

from pathwatch.actions import ActionDispatcher
from pathwatch.app import AppContext
from pathwatch.filters import EventFilter
from pathwatch.models import WatcherSpec
from pathwatch.subscriptions import Subscription, SubscriptionError
from pathwatch.tree import WatchTreeManager
from pathwatch.watcher import Watcher


class FakeSubscriber:
    """In-memory subscription primitive that refuses paths that do not exist."""

    def __init__(self, refuse=()):
        self.refuse = set(refuse)
        self.subscribed = []
        self.cancelled = []
        self._next_wd = 1

    def subscribe(self, path):
        if path in self.refuse or not os.path.exists(path):
            raise SubscriptionError(path, "No such file or directory")
        subscription = Subscription(path=path, wd=self._next_wd)
        self._next_wd += 1
        self.subscribed.append(path)
        return subscription

    def cancel(self, subscription):
        if subscription.cancelled:
            return False
        subscription.cancelled = True
        self.cancelled.append(subscription.path)
        return True

    def is_cancelled(self, subscription):
        return subscription.cancelled

    def read(self):
        return []

    def close(self):
        pass


class BrokenStream:
    """Standard output whose reader went away."""

    def write(self, data):
        raise BrokenPipeError(32, "Broken pipe")

    def flush(self):
        raise BrokenPipeError(32, "Broken pipe")


class RecordingSpawner:
    def __init__(self, fail=False):
        self.commands = []
        self.fail = fail

    def __call__(self, command):
        if self.fail:
            raise OSError(2, "No such file or directory")
        self.commands.append(command)


@pytest.fixture
def context():
    # Outside the "pathwatch" hierarchy, which the service logger stops from propagating.
    logger = logging.getLogger("pathwatch_tests")
    logger.setLevel(logging.DEBUG)
    return AppContext(logger=logger, detached=False, stdout=io.StringIO())


@pytest.fixture
def tree(context):
    return WatchTreeManager(context)


@pytest.fixture
def event_filter(context):
    return EventFilter(context)


@pytest.fixture
def spawner():
    return RecordingSpawner()


@pytest.fixture
def broken_stdout(context):
    context.stdout = BrokenStream()
    return context.stdout


@pytest.fixture
def failing_spawner():
    return RecordingSpawner(fail=True)


@pytest.fixture
def dispatcher(context, spawner):
    return ActionDispatcher(context, spawn=spawner)


@pytest.fixture
def fake_subscriber_factory():
    return FakeSubscriber


@pytest.fixture
def make_watcher():
    """Factory building an opened Watcher over a FakeSubscriber."""

    def _make(root, **kwargs):
        refuse = kwargs.pop("refuse", ())
        spec = WatcherSpec(name=kwargs.pop("name", "w1"), root=str(root), **kwargs)
        watcher = Watcher(spec, subscriber_factory=lambda: FakeSubscriber(refuse))
        watcher.open()
        return watcher

    return _make


@pytest.fixture
def temp_tree(tmp_path):
    """
    root/
      a/
        a1/
          a11/
        a2/
      b/
      bc/
      file.txt
    """
    root = tmp_path / "root"
    (root / "a" / "a1" / "a11").mkdir(parents=True)
    (root / "a" / "a2").mkdir()
    (root / "b").mkdir()
    (root / "bc").mkdir()
    (root / "file.txt").write_text("content")
    return root
