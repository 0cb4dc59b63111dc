"""
Classification of raw change notifications into PathWatch events.
"""

import logging
import os
from typing import Optional

from inotify_simple import flags

from pathwatch.models import (ATTRIBUTE_CHANGED, CHANGED, CHANGING, CREATED,
                              DELETED, Event)
from pathwatch.tree import is_strictly_within

RAW_KIND_MAP = {
    flags.CLOSE_WRITE: CHANGING,
    flags.MODIFY: CHANGED,
    flags.CREATE: CREATED,
    flags.MOVED_TO: CREATED,
    flags.DELETE: DELETED,
    flags.MOVED_FROM: DELETED,
    flags.ATTRIB: ATTRIBUTE_CHANGED,
}


def relative_path(path: str, root: str) -> str:
    """Path relative to root; empty when path is the root or not below it."""
    if not is_strictly_within(path, root):
        return ""
    return os.path.relpath(path, root)


def make_event(watcher, kind: str, path: str) -> Event:
    return Event(
        watcher=watcher,
        kind=kind,
        path=path,
        rfile=relative_path(path, watcher.root),
    )


def classify(watcher, raw, logger=None) -> Optional[Event]:
    """
    Convert a raw notification into an Event, or None if its kind is not one
    PathWatch reports.

    A subdirectory's own DELETE_SELF is dropped because its parent already
    reported the deletion; only the watcher root has no parent watch.
    """
    logger = logger or logging.getLogger(__name__)

    kind = RAW_KIND_MAP.get(raw.kind)
    if kind is None and raw.kind == flags.DELETE_SELF and raw.path == watcher.root:
        kind = DELETED

    if kind is None:
        logger.debug(f"{watcher.name}: unknown event (event_type={raw.kind!r}, file={raw.path})")
        return None

    event = make_event(watcher, kind, raw.path)
    logger.debug(f"{watcher.name}: watcher event received ({event})")
    return event
