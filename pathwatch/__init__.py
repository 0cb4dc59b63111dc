"""
PathWatch: a declarative file/directory change watcher.

Provides both a CLI and library API for subscribing to filesystem changes
and firing commands for the events that pass a watcher's filters.
"""

__version__ = "0.1.0"
