"""
Data model for PathWatch.

A WatcherSpec is the validated, immutable description of one watcher. An
Event is the transient, normalized form of a change notification that flows
through the filter pipeline and, if accepted, to the action dispatcher.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

# Event vocabulary
CHANGING = "changing"
CHANGED = "changed"
CREATED = "created"
DELETED = "deleted"
ATTRIBUTE_CHANGED = "attribute_changed"
MOUNTED = "mounted"
UNMOUNTED = "unmounted"

EVENT_KINDS = (
    CHANGING,
    CHANGED,
    CREATED,
    DELETED,
    ATTRIBUTE_CHANGED,
    MOUNTED,
    UNMOUNTED,
)

# Kinds for which the changed path no longer exists.
VANISHED_KINDS = (DELETED, UNMOUNTED)

# File type vocabulary, with the single-letter aliases used by find(1).
FILE_TYPES = ("block", "char", "dir", "fifo", "regular", "symlink", "socket")
FILE_TYPE_ALIASES = {
    "b": "block",
    "c": "char",
    "d": "dir",
    "p": "fifo",
    "f": "regular",
    "l": "symlink",
    "s": "socket",
}

# Size predicate vocabulary
SIZE_EQUAL = "="
SIZE_GREATER = ">"
SIZE_LESS = "<"
SIZE_COMPARATORS = (SIZE_EQUAL, SIZE_GREATER, SIZE_LESS)

SIZE_UNITS = {
    "bytes": 1,
    "KiB": 1024,
    "MiB": 1024 ** 2,
    "GiB": 1024 ** 3,
}


@dataclass(frozen=True)
class SizePredicate:
    """A comparison of a file's byte size against a magnitude in some unit."""

    comparator: str = SIZE_EQUAL
    magnitude: int = 0
    unit: str = "bytes"

    @property
    def limit(self) -> int:
        """The magnitude converted to bytes."""
        return self.magnitude * SIZE_UNITS[self.unit]

    def matches(self, size: int) -> bool:
        if self.comparator == SIZE_GREATER:
            return size > self.limit
        if self.comparator == SIZE_LESS:
            return size < self.limit
        return size == self.limit

    def __str__(self):
        return f"{self.comparator}{self.magnitude} {self.unit}"


@dataclass(frozen=True)
class Action:
    """What to do with an accepted event."""

    command: Optional[str] = None
    print_path: bool = False
    print0: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.command or self.print_path or self.print0)


@dataclass(frozen=True)
class WatcherSpec:
    """
    Validated watcher definition.

    Instances are built by pathwatch.config and never mutated afterwards.
    """

    name: str
    root: str
    recursive: bool = False
    max_depth: int = 0
    mount: bool = False
    readable: bool = False
    writable: bool = False
    executable: bool = False
    size: Optional[SizePredicate] = None
    file_type: Optional[str] = None
    user: Optional[str] = None
    group: Optional[str] = None
    events: Tuple[str, ...] = ()
    includes: Tuple[str, ...] = ()
    excludes: Tuple[str, ...] = ()
    action: Action = field(default_factory=Action)


@dataclass
class Event:
    """A normalized change notification for one watcher."""

    watcher: Any
    kind: str
    path: str
    rfile: str = ""

    def __str__(self):
        return f"event={self.kind}, file={self.path}"
