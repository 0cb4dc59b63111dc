"""
Watch tree management for PathWatch.

Installs and removes subscriptions for a watcher across a directory tree.
Depth is the number of path segments below the watcher root: the root has
depth 0, its immediate children depth 1. A directory is watched when the
watcher's max_depth is 0 (unlimited) or its depth is at most max_depth.
"""

import os
from typing import List, Tuple

from pathwatch.subscriptions import SubscriptionError


def is_within(path: str, ancestor: str) -> bool:
    """
    True if path equals ancestor or lies below it.

    Compared on path-segment boundaries, so '/a/bc' is not within '/a/b'.
    """
    if path == ancestor:
        return True
    prefix = ancestor if ancestor.endswith(os.sep) else ancestor + os.sep
    return path.startswith(prefix)


def is_strictly_within(path: str, ancestor: str) -> bool:
    return path != ancestor and is_within(path, ancestor)


def depth_below(path: str, root: str) -> int:
    """Number of path segments between root and path (0 for the root)."""
    if path == root:
        return 0
    if not is_within(path, root):
        raise ValueError(f"'{path}' is not below '{root}'")
    relative = os.path.relpath(path, root)
    return len([part for part in relative.split(os.sep) if part])


class WatchTreeManager:
    """Keeps a watcher's subscription registry in step with its directory tree."""

    def __init__(self, context):
        self.context = context

    @property
    def logger(self):
        return self.context.logger

    def within_depth(self, watcher, depth: int) -> bool:
        max_depth = watcher.spec.max_depth
        return max_depth == 0 or depth <= max_depth

    def install_subtree(self, watcher, path: str, depth: int = 0) -> int:
        """
        Subscribe to path and, for recursive watchers, every directory below it
        within the depth limit.

        Failure to subscribe to path itself raises SubscriptionError and
        registers nothing. Failures further down are logged and leave the
        affected directory unwatched. Returns the number of new subscriptions.
        """
        if not self.within_depth(watcher, depth):
            self.logger.debug(
                f"{watcher.name}: maximum depth of recursion reached (depth={depth}, path={path})"
            )
            return 0

        installed = 0
        if path not in watcher.registry:
            self._subscribe(watcher, path)
            installed += 1

        if not watcher.recursive:
            return installed

        # Explicit work-list instead of recursion to survive deep trees.
        pending: List[Tuple[str, int]] = [(path, depth)]
        while pending:
            current, current_depth = pending.pop()
            if not self.within_depth(watcher, current_depth + 1):
                continue

            for child in self._child_directories(watcher, current):
                if child not in watcher.registry:
                    try:
                        self._subscribe(watcher, child)
                    except SubscriptionError as e:
                        self.logger.error(f"{watcher.name}: {e}")
                        continue
                    installed += 1
                pending.append((child, current_depth + 1))

        return installed

    def remove_subtree(self, watcher, path: str) -> int:
        """
        Cancel every subscription at or below path, except the watcher root's own.
        """
        self.logger.debug(
            f"{watcher.name}: removing file monitors for recursive path (path={path})"
        )
        removed = 0
        for entry_path, subscription in watcher.registry.items():
            if entry_path == watcher.root:
                continue
            if is_within(entry_path, path):
                self._cancel(watcher, entry_path, subscription)
                removed += 1
        return removed

    def remove_path(self, watcher, path: str) -> bool:
        """Cancel the single subscription registered for path."""
        self.logger.debug(f"{watcher.name}: removing file monitor for path (path={path})")
        subscription = watcher.registry.get(path)
        if subscription is None:
            return False
        self._cancel(watcher, path, subscription)
        return True

    def teardown(self, watcher) -> int:
        """Cancel every subscription of the watcher."""
        removed = 0
        for entry_path, subscription in watcher.registry.items():
            self._cancel(watcher, entry_path, subscription)
            removed += 1
        return removed

    def _subscribe(self, watcher, path: str):
        self.logger.debug(f"{watcher.name}: creating file monitor for path (path={path})")
        subscription = watcher.subscriber.subscribe(path)
        watcher.registry.add(path, subscription)
        return subscription

    def _cancel(self, watcher, path: str, subscription):
        subscriber = watcher.subscriber
        if subscriber is None or subscriber.is_cancelled(subscription):
            self.logger.debug(f"{watcher.name}: file monitor already cancelled ({path})")
        else:
            subscriber.cancel(subscription)
            self.logger.debug(f"{watcher.name}: file monitor cancelled ({path})")
        watcher.registry.pop(path)

    def _child_directories(self, watcher, path: str) -> List[str]:
        children = []
        try:
            with os.scandir(path) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            children.append(entry.path)
                    except OSError as e:
                        self.logger.error(f"{watcher.name}: error accessing {entry.path}: {e}")
        except OSError as e:
            self.logger.error(
                f"{watcher.name}: failed to enumerate directory '{path}', "
                f"not watching below it: {e}"
            )
        return sorted(children)
