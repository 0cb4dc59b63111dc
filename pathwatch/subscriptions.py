"""
Path subscriptions for PathWatch.

This module wraps the kernel's inotify interface (through inotify_simple) as
a per-watcher subscription primitive:

  - subscribe(path) -> Subscription, raising SubscriptionError on refusal
  - cancel(subscription), a no-op for already cancelled subscriptions
  - is_cancelled(subscription)
  - read() -> list of RawNotification (kind flag + absolute path)

It also provides SubscriptionRegistry, the path -> Subscription map every
Watcher keeps for its live subscriptions.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Tuple

from inotify_simple import INotify, flags

WATCH_MASK = (
    flags.CREATE
    | flags.DELETE
    | flags.MODIFY
    | flags.ATTRIB
    | flags.CLOSE_WRITE
    | flags.MOVED_FROM
    | flags.MOVED_TO
    | flags.DELETE_SELF
    | flags.MOVE_SELF
)


class SubscriptionError(Exception):
    """Raised when the OS refuses to subscribe to a path."""

    def __init__(self, path, reason):
        super().__init__(f"cannot watch '{path}': {reason}")
        self.path = path
        self.reason = reason


@dataclass(eq=False)
class Subscription:
    """Opaque handle for one active path subscription."""

    path: str
    wd: int
    cancelled: bool = False


class RawNotification(NamedTuple):
    kind: object
    path: str
    other_path: Optional[str] = None


class InotifySubscriber:
    """
    Subscription primitive backed by one inotify instance.

    Several paths may resolve to the same inode (bind mounts), in which case
    the kernel hands back the same watch descriptor; the kernel watch is
    only removed once every subscription sharing it has been cancelled.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self._inotify = INotify()
        self._by_wd: Dict[int, List[Subscription]] = {}

    def fileno(self) -> int:
        return self._inotify.fileno()

    def subscribe(self, path: str) -> Subscription:
        try:
            wd = self._inotify.add_watch(path, WATCH_MASK)
        except OSError as e:
            raise SubscriptionError(path, e.strerror or e) from e
        subscription = Subscription(path=path, wd=wd)
        self._by_wd.setdefault(wd, []).append(subscription)
        return subscription

    def is_cancelled(self, subscription: Subscription) -> bool:
        return subscription.cancelled

    def cancel(self, subscription: Subscription) -> bool:
        """Cancel a subscription. Returns False if it was already cancelled."""
        if subscription.cancelled:
            return False
        subscription.cancelled = True

        shared = self._by_wd.get(subscription.wd, [])
        if subscription in shared:
            shared.remove(subscription)
        if shared:
            return True
        self._by_wd.pop(subscription.wd, None)

        try:
            self._inotify.rm_watch(subscription.wd)
        except OSError as e:
            # The kernel already dropped the watch (path deleted or unmounted).
            self.logger.debug(
                f"watch for '{subscription.path}' already removed by the kernel: {e}"
            )
        return True

    def read(self) -> List[RawNotification]:
        """Read all pending notifications without blocking."""
        notifications = []
        for event in self._inotify.read(timeout=0):
            event_flags = flags.from_mask(event.mask)

            if flags.Q_OVERFLOW in event_flags:
                self.logger.error("inotify queue overflow, some events were lost")
                continue

            subscriptions = self._by_wd.get(event.wd)
            if not subscriptions:
                continue

            if flags.IGNORED in event_flags:
                for subscription in subscriptions:
                    subscription.cancelled = True
                del self._by_wd[event.wd]
                continue

            base = subscriptions[0].path
            path = os.path.join(base, event.name) if event.name else base
            for flag in event_flags:
                if flag == flags.ISDIR:
                    continue
                notifications.append(RawNotification(flag, path))
        return notifications

    def close(self):
        for subscriptions in self._by_wd.values():
            for subscription in subscriptions:
                subscription.cancelled = True
        self._by_wd.clear()
        self._inotify.close()


class SubscriptionRegistry:
    """
    Map of path -> Subscription for one watcher.

    Scans always go over a copy of the entries, so callers may remove
    entries while walking the result without skipping or revisiting any.
    """

    def __init__(self):
        self._entries: Dict[str, Subscription] = {}

    def __contains__(self, path):
        return path in self._entries

    def __len__(self):
        return len(self._entries)

    def get(self, path: str) -> Optional[Subscription]:
        return self._entries.get(path)

    def add(self, path: str, subscription: Subscription):
        self._entries[path] = subscription

    def pop(self, path: str) -> Optional[Subscription]:
        return self._entries.pop(path, None)

    def items(self) -> List[Tuple[str, Subscription]]:
        return list(self._entries.items())

    def paths(self) -> List[str]:
        return sorted(self._entries)

    def clear(self):
        self._entries.clear()
