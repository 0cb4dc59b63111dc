"""
Action dispatch for PathWatch.

Renders a watcher's command template and spawns it without waiting, and
prints the event path to standard output when the process runs attached.

Template placeholders:
  $name   watcher name
  $path   watcher root
  $event  event kind
  $file   absolute path of the changed file
  $rfile  path relative to the watcher root
"""

import re
import shlex
import subprocess

PLACEHOLDER_RE = re.compile(r"\$(name|path|event|rfile|file)")


def render_command(template: str, name: str, root: str, kind: str, path: str, rfile: str) -> str:
    """
    Substitute the placeholders of a command template.

    Substitution is a single left-to-right pass, so text inserted for one
    placeholder is never itself expanded.
    """
    values = {
        "name": name,
        "path": root,
        "event": kind,
        "file": path,
        "rfile": rfile,
    }
    return PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], template)


def spawn_detached(command_line: str):
    """Start command_line as an independent process. Raises OSError/ValueError."""
    argv = shlex.split(command_line)
    if not argv:
        raise ValueError("empty command line")
    return subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        close_fds=True,
        start_new_session=True,
    )


class ActionDispatcher:
    """Runs the action of a watcher for an accepted event."""

    def __init__(self, context, spawn=None):
        self.context = context
        self.spawn = spawn or spawn_detached
        self._children = []

    @property
    def logger(self):
        return self.context.logger

    def dispatch(self, watcher, event):
        action = watcher.spec.action
        self.logger.info(f"{watcher.name}: event fired ({event})")

        if action.command:
            command = render_command(
                action.command,
                watcher.name,
                watcher.root,
                event.kind,
                event.path,
                event.rfile,
            )
            self.logger.info(f"{watcher.name}: executing command '{command}'")
            try:
                child = self.spawn(command)
            except (OSError, ValueError) as e:
                self.logger.error(f"{watcher.name}: failed to execute command ({e})")
            else:
                if isinstance(child, subprocess.Popen):
                    self._children.append(child)

        if self.context.detached or not (action.print_path or action.print0):
            return

        stream = self.context.stdout
        try:
            if action.print_path:
                stream.write(f"{event.path}\n")
            if action.print0:
                stream.write(f"{event.path}\0")
            stream.flush()
        except OSError as e:
            self.logger.error(f"{watcher.name}: failed to print the file name ({e})")

    def reap(self) -> int:
        """Collect finished children without blocking. Returns how many are still running."""
        self._children = [child for child in self._children if child.poll() is None]
        return len(self._children)
