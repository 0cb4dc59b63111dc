import grp
import os
import pwd
import time

import daemon
import psutil
from daemon.pidfile import PIDLockFile

from pathwatch import config as config_module
from pathwatch.app import AppContext, Application


class DaemonError(Exception):
    """Raised when the service cannot detach from the terminal."""

    pass


def get_pid_file(config):
    return config.get("main", {}).get("pid_file", config_module.DEFAULT_PID_FILE)


def read_pid(pid_file):
    """Return the pid stored in pid_file, or None if there is none."""
    if not os.path.exists(pid_file):
        return None
    with open(pid_file, "r") as f:
        content = f.read().strip()
    try:
        return int(content)
    except ValueError:
        return None


def resolve_ids(user=None, group=None):
    """
    Resolve the user/group to drop privileges to.

    Returns:
        tuple: (uid, gid), either may be None.
    """
    uid = gid = None
    try:
        if user:
            entry = pwd.getpwnam(user) if not str(user).isdigit() else pwd.getpwuid(int(user))
            uid = entry.pw_uid
            gid = entry.pw_gid
        if group:
            gid = (grp.getgrnam(group) if not str(group).isdigit() else grp.getgrgid(int(group))).gr_gid
    except KeyError as e:
        raise DaemonError(f"unknown user or group: {e}")
    return uid, gid


def build_application(config, specs, logger, detached):
    """Create the Application for a loaded configuration."""
    context = AppContext(logger=logger, detached=detached)

    def reload_specs():
        new_config = config_module.load_config(config.get("__config_path__"))
        return config_module.load_watcher_specs(new_config)

    return Application(
        context,
        specs,
        spec_loader=reload_specs if config.get("__config_path__") else None,
        mount_poll_interval=config_module.get_mount_poll_interval(config),
    )


def log_daemon_status(root_logger, app):
    """
    Log process information using psutil together with the active watchers.
    """
    try:
        proc = psutil.Process(os.getpid())
        status_info = {
            "PID": proc.pid,
            "Memory RSS": proc.memory_info().rss,
            "Threads": proc.num_threads(),
            "Started At": time.strftime(
                "%Y-%m-%d %H:%M:%S", time.localtime(proc.create_time())
            ),
            "Watchers": len(app.watchers),
            "Watcher Names": ", ".join(w.name for w in app.watchers),
        }
        root_logger.info(
            "Daemon Status:\n" + "\n".join(f"{k}: {v}" for k, v in status_info.items())
        )
    except psutil.Error as e:
        root_logger.error(f"Error logging daemon status: {str(e)}")


def run_foreground(config, specs, logger):
    """Run the watchers attached to the terminal until interrupted."""
    app = build_application(config, specs, logger, detached=False)
    try:
        app.run()
    finally:
        app.loop.close()
    return app


def run_daemon(config, specs, logger):
    """
    Detach from the terminal and run the watchers.

    The pid file is created by python-daemon's PIDLockFile and removed on
    exit. Privileges are dropped to [main] user/group when configured.
    """
    main_cfg = config.get("main", {})
    pid_file = os.path.abspath(get_pid_file(config))
    uid, gid = resolve_ids(main_cfg.get("user"), main_cfg.get("group"))

    pid_dir = os.path.dirname(pid_file)
    try:
        os.makedirs(pid_dir, exist_ok=True)
    except OSError as e:
        raise DaemonError(f"cannot create pid file directory {pid_dir}: {e}")

    context_kwargs = {
        "pidfile": PIDLockFile(pid_file),
        "files_preserve": [
            handler.stream.fileno()
            for handler in logger.handlers
            if hasattr(handler, "stream") and hasattr(handler.stream, "fileno")
        ]
        + [
            handler.socket.fileno()
            for handler in logger.handlers
            if getattr(handler, "socket", None) is not None
        ],
        # Signals are bridged onto the event loop by the application itself.
        "signal_map": {},
    }
    if uid is not None:
        context_kwargs["uid"] = uid
    if gid is not None:
        context_kwargs["gid"] = gid

    try:
        context = daemon.DaemonContext(**context_kwargs)
        context.open()
    except Exception as e:
        raise DaemonError(f"failed to daemonize: {e}")

    app = None
    try:
        logger.info("pathwatch daemon started")
        app = build_application(config, specs, logger, detached=True)
        log_daemon_status(logger, app)
        app.run()
        logger.info("pathwatch daemon stopped")
    except Exception as e:
        logger.error(f"Fatal error in daemon: {str(e)}", exc_info=True)
        raise
    finally:
        if app is not None:
            app.loop.close()
        context.close()
