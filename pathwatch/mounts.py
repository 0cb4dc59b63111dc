"""
Mount table tracking for PathWatch.

Mounting a filesystem over a watched directory (or unmounting one) silently
changes what the subscriptions below that point observe. The reconciler
compares successive mount snapshots and rebuilds the watch tree of every
affected watcher at exactly the mount point, then reports a synthetic
mounted/unmounted event through the normal filter and dispatch path.
"""

import os
from typing import Callable, Iterable, List, NamedTuple, Optional

import psutil

from pathwatch.events import make_event
from pathwatch.models import MOUNTED, UNMOUNTED
from pathwatch.subscriptions import SubscriptionError
from pathwatch.tree import depth_below, is_strictly_within, is_within


class MountEntry(NamedTuple):
    device: str
    path: str


class MountSnapshot:
    """Ordered set of mounted filesystems at one instant."""

    def __init__(self, entries: Iterable[MountEntry] = ()):
        seen = set()
        ordered = []
        for entry in entries:
            entry = MountEntry(*entry)
            if entry not in seen:
                seen.add(entry)
                ordered.append(entry)
        self._entries = tuple(ordered)
        self._set = frozenset(ordered)

    def __iter__(self):
        return iter(self._entries)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, entry):
        return entry in self._set

    def __eq__(self, other):
        if not isinstance(other, MountSnapshot):
            return NotImplemented
        return self._set == other._set

    def __repr__(self):
        return f"MountSnapshot({list(self._entries)!r})"

    def difference(self, other: "MountSnapshot") -> List[MountEntry]:
        """Entries of this snapshot that are absent from other, in order."""
        return [entry for entry in self._entries if entry not in other]


def take_snapshot() -> MountSnapshot:
    """Read the current mount table."""
    return MountSnapshot(
        MountEntry(partition.device, os.path.normpath(partition.mountpoint))
        for partition in psutil.disk_partitions(all=True)
    )


def has_parent(path: str) -> bool:
    return os.path.dirname(path) != path


class MountReconciler:
    """Keeps watch trees consistent across mount table changes."""

    def __init__(
        self,
        context,
        tree,
        event_filter,
        dispatcher,
        snapshot_source: Optional[Callable[[], MountSnapshot]] = None,
    ):
        self.context = context
        self.tree = tree
        self.event_filter = event_filter
        self.dispatcher = dispatcher
        self.snapshot_source = snapshot_source or take_snapshot
        self.snapshot = MountSnapshot()

    @property
    def logger(self):
        return self.context.logger

    def reset(self, snapshot: Optional[MountSnapshot] = None):
        """Store a baseline snapshot without reconciling."""
        self.snapshot = snapshot if snapshot is not None else self.snapshot_source()

    def refresh(self, watchers, snapshot: Optional[MountSnapshot] = None) -> list:
        """
        Take a fresh snapshot and reconcile it with the stored one.

        Returns the synthesized events that passed the filters.
        """
        new = snapshot if snapshot is not None else self.snapshot_source()
        if new == self.snapshot:
            return []
        self.logger.debug("mount: mount event received")
        return self.reconcile(watchers, self.snapshot, new)

    def reconcile(self, watchers, old: MountSnapshot, new: MountSnapshot) -> list:
        fired = []
        try:
            for entry in old.difference(new):
                self.logger.info(f"mount: path unmounted '{entry.path}'")
                fired.extend(self._apply(watchers, UNMOUNTED, entry.path))
            for entry in new.difference(old):
                self.logger.info(f"mount: path mounted '{entry.path}'")
                fired.extend(self._apply(watchers, MOUNTED, entry.path))
        finally:
            self.snapshot = new
        return fired

    def is_relevant(self, watcher, mount_path: str) -> bool:
        if is_within(mount_path, watcher.root):
            return True
        if watcher.recursive:
            return any(is_within(mount_path, path) for path in watcher.active_paths())
        return False

    def _apply(self, watchers, kind: str, mount_path: str) -> list:
        if not has_parent(mount_path):
            self.logger.debug(f"mount: path has no parent ({mount_path})")
            return []

        fired = []
        for watcher in watchers:
            if not self.is_relevant(watcher, mount_path):
                continue
            self.logger.debug(f"{watcher.name}: path matches ({mount_path})")
            try:
                event = self._update_watcher(watcher, kind, mount_path)
            except Exception as e:
                self.logger.error(
                    f"{watcher.name}: failed to handle {kind} event ({mount_path}): {e}",
                    exc_info=True,
                )
                continue
            if event is not None:
                fired.append(event)
        return fired

    def _update_watcher(self, watcher, kind: str, mount_path: str):
        self._rebuild(watcher, kind, mount_path)
        self.logger.info(f"{watcher.name}: watcher updated")

        event = make_event(watcher, kind, mount_path)
        if not self.event_filter.test(watcher, event):
            self.logger.debug(f"{watcher.name}: event ignored ({event})")
            return None
        self.dispatcher.dispatch(watcher, event)
        return event

    def _rebuild(self, watcher, kind: str, mount_path: str):
        if mount_path == watcher.root:
            self.tree.teardown(watcher)
            if kind == MOUNTED:
                self._install(watcher, mount_path, 0)
            return

        if not is_strictly_within(mount_path, watcher.root):
            return

        self.tree.remove_subtree(watcher, mount_path)
        if kind == MOUNTED and watcher.recursive:
            depth = depth_below(mount_path, watcher.root)
            self.logger.debug(f"{watcher.name}: file depth to watcher path is '{depth}'")
            self._install(watcher, mount_path, depth)

    def _install(self, watcher, path: str, depth: int):
        try:
            self.tree.install_subtree(watcher, path, depth)
        except SubscriptionError as e:
            self.logger.error(f"{watcher.name}: failed to rebuild watch tree: {e}")
