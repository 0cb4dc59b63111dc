"""
Event filter pipeline for PathWatch.

Each stage can veto an event; the first failing stage rejects it:

  1. event-kind allow-list
  2. existence-dependent checks (skipped for deleted/unmounted events):
     filesystem, access, size, type, owner user, owner group
  3. include patterns - a match accepts immediately, bypassing excludes
  4. exclude patterns - a match rejects
  5. otherwise accept
"""

import fnmatch
import grp
import os
import pwd
import stat
from typing import Optional

from pathwatch.models import VANISHED_KINDS


def file_type_of(mode: int) -> Optional[str]:
    """Map a st_mode to a file type symbol, None if unrecognized."""
    if stat.S_ISBLK(mode):
        return "block"
    if stat.S_ISCHR(mode):
        return "char"
    if stat.S_ISDIR(mode):
        return "dir"
    if stat.S_ISREG(mode):
        return "regular"
    if stat.S_ISLNK(mode):
        return "symlink"
    if stat.S_ISFIFO(mode):
        return "fifo"
    if stat.S_ISSOCK(mode):
        return "socket"
    return None


def resolve_user(user: str) -> Optional[int]:
    """Resolve a user name, falling back to a numeric id. None if unknown."""
    try:
        return pwd.getpwnam(user).pw_uid
    except KeyError:
        pass
    try:
        return pwd.getpwuid(int(user)).pw_uid
    except (KeyError, ValueError, OverflowError):
        return None


def resolve_group(group: str) -> Optional[int]:
    """Resolve a group name, falling back to a numeric id. None if unknown."""
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        pass
    try:
        return grp.getgrgid(int(group)).gr_gid
    except (KeyError, ValueError, OverflowError):
        return None


def matches_any(rfile: str, patterns) -> bool:
    return any(fnmatch.fnmatchcase(rfile, pattern) for pattern in patterns)


class EventFilter:
    """Decides whether an event passes its watcher's criteria."""

    def __init__(self, context):
        self.context = context

    @property
    def logger(self):
        return self.context.logger

    def test(self, watcher, event) -> bool:
        spec = watcher.spec

        if spec.events and event.kind not in spec.events:
            self.logger.debug(f"{watcher.name}: event kind '{event.kind}' not allowed")
            return False

        if event.kind not in VANISHED_KINDS and not self._check_file(watcher, event):
            return False

        if spec.includes:
            if matches_any(event.rfile, spec.includes):
                self.logger.debug(f"{watcher.name}: relative filename found in include list")
                return True
            return False

        if spec.excludes and matches_any(event.rfile, spec.excludes):
            self.logger.debug(f"{watcher.name}: relative filename found in exclude list")
            return False

        return True

    def _check_file(self, watcher, event) -> bool:
        spec = watcher.spec

        try:
            root_stat = os.stat(watcher.root)
        except OSError as e:
            self.logger.error(f"{watcher.name}: failed to stat the watcher path '{watcher.root}': {e}")
            return False
        try:
            file_stat = os.stat(event.path)
        except OSError as e:
            self.logger.error(f"{watcher.name}: failed to stat the watched file '{event.path}': {e}")
            return False

        if spec.mount and file_stat.st_dev != root_stat.st_dev:
            self.logger.debug(f"{watcher.name}: the filesystems are not the same")
            return False

        if spec.readable and not os.access(event.path, os.R_OK):
            self.logger.debug(f"{watcher.name}: the file is not readable")
            return False
        if spec.writable and not os.access(event.path, os.W_OK):
            self.logger.debug(f"{watcher.name}: the file is not writable")
            return False
        if spec.executable and not os.access(event.path, os.X_OK):
            self.logger.debug(f"{watcher.name}: the file is not executable")
            return False

        if spec.size is not None and not stat.S_ISDIR(file_stat.st_mode):
            if not spec.size.matches(file_stat.st_size):
                self.logger.debug(
                    f"{watcher.name}: the file size {file_stat.st_size} does not match {spec.size}"
                )
                return False

        if spec.file_type:
            mode = file_stat.st_mode
            if spec.file_type == "symlink":
                # stat() follows links, only lstat() can report one.
                try:
                    mode = os.lstat(event.path).st_mode
                except OSError as e:
                    self.logger.error(f"{watcher.name}: failed to stat the watched file '{event.path}': {e}")
                    return False
            file_type = file_type_of(mode)
            if file_type is None:
                self.logger.debug(f"{watcher.name}: the file type is unknown ({file_stat.st_mode:o})")
                return False
            if file_type != spec.file_type:
                self.logger.debug(f"{watcher.name}: the file type doesn't match ({file_type})")
                return False

        if spec.user:
            uid = resolve_user(spec.user)
            if uid is None:
                self.logger.debug(f"{watcher.name}: failed to resolve user '{spec.user}'")
                return False
            if uid != file_stat.st_uid:
                self.logger.debug(f"{watcher.name}: the owner user doesn't match")
                return False

        if spec.group:
            gid = resolve_group(spec.group)
            if gid is None:
                self.logger.debug(f"{watcher.name}: failed to resolve group '{spec.group}'")
                return False
            if gid != file_stat.st_gid:
                self.logger.debug(f"{watcher.name}: the owner group doesn't match")
                return False

        return True
