"""
Watcher: a WatcherSpec bound to its live subscriptions.
"""

from typing import Callable, List, Optional

from pathwatch.models import WatcherSpec
from pathwatch.subscriptions import InotifySubscriber, SubscriptionRegistry


class Watcher:
    """
    One running watcher.

    Holds the immutable spec, the subscription primitive it uses and the
    registry of active subscriptions keyed by path. The subscriber is only
    created while the watcher is open.
    """

    def __init__(
        self,
        spec: WatcherSpec,
        subscriber_factory: Optional[Callable[[], object]] = None,
    ):
        self.spec = spec
        self.registry = SubscriptionRegistry()
        self.subscriber = None
        self._subscriber_factory = subscriber_factory or InotifySubscriber

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def root(self) -> str:
        return self.spec.root

    @property
    def recursive(self) -> bool:
        return self.spec.recursive

    @property
    def is_open(self) -> bool:
        return self.subscriber is not None

    def open(self):
        if self.subscriber is None:
            self.subscriber = self._subscriber_factory()
        return self.subscriber

    def close(self):
        if self.subscriber is not None:
            close = getattr(self.subscriber, "close", None)
            if callable(close):
                close()
            self.subscriber = None
        self.registry.clear()

    def active_paths(self) -> List[str]:
        return self.registry.paths()

    def __repr__(self):
        return f"Watcher(name={self.name!r}, root={self.root!r})"
