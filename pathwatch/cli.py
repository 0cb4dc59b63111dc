import os
import signal
import time

import click
import psutil
from rich.console import Console
from rich.table import Table
from tabulate import tabulate

from pathwatch import __version__
from pathwatch import config
from pathwatch import daemon as daemon_module
from pathwatch.logger import setup_service_logger

EXIT_CONFIG = 2
EXIT_WATCHERS = 3
EXIT_LOGGER = 4
EXIT_DAEMON = 5


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Path to configuration TOML file.")
@click.option("--verbose", "-v", is_flag=True, help="Set verbose output.")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.version_option(__version__, prog_name="pathwatch")
@click.pass_context
def main(ctx, config_path, verbose, debug):
    """
    PathWatch CLI: watch files and directories and act on their changes.
    """
    ctx.obj = {"config_path": config_path, "verbose": verbose, "debug": debug}


def load_main_config(ctx):
    """Load the main configuration or exit with the configuration status."""
    try:
        cfg = config.load_config(ctx.obj.get("config_path"))
    except config.ConfigError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    if ctx.obj.get("debug"):
        cfg.setdefault("logging", {})["level"] = "DEBUG"
    return cfg


def load_specs(ctx, cfg):
    try:
        return config.load_watcher_specs(cfg)
    except config.ConfigError as e:
        click.echo(f"Error in watchers configuration: {e}", err=True)
        ctx.exit(EXIT_WATCHERS)


def make_logger(ctx, cfg, detached):
    try:
        return setup_service_logger(
            cfg, detached, verbose=ctx.obj.get("verbose"), debug=ctx.obj.get("debug")
        )
    except OSError as e:
        click.echo(f"Failed to create events logger: {e}", err=True)
        ctx.exit(EXIT_LOGGER)


@main.command()
@click.pass_context
def show_config(ctx):
    """
    Show the loaded configuration.
    """
    cfg = load_main_config(ctx)
    click.echo(cfg)


@main.command()
@click.option("--format", "-f", "out_format", default="rich",
              type=click.Choice(["rich", "plain"], case_sensitive=False), help="Output format.")
@click.pass_context
def check(ctx, out_format):
    """
    Validate the configuration and list the watchers.
    """
    cfg = load_main_config(ctx)
    specs = load_specs(ctx, cfg)

    headers = ["Name", "Path", "Recursive", "Max Depth", "Events", "Include", "Exclude", "Exec"]
    rows = [
        [
            spec.name,
            spec.root,
            "yes" if spec.recursive else "no",
            str(spec.max_depth) if spec.recursive else "-",
            ", ".join(spec.events) or "all",
            ", ".join(spec.includes) or "-",
            ", ".join(spec.excludes) or "-",
            spec.action.command or "-",
        ]
        for spec in specs
    ]

    if out_format.lower() == "plain":
        click.echo(tabulate(rows, headers=headers))
    else:
        table = Table(title="PathWatch Watchers")
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*row)
        Console().print(table)
    click.echo(f"Configuration OK ({len(specs)} watchers).")


@main.command()
@click.option("--foreground", is_flag=True, help="Run in foreground (not as daemon).")
@click.pass_context
def run(ctx, foreground):
    """
    Start the PathWatch service with the configured watchers.
    """
    cfg = load_main_config(ctx)
    specs = load_specs(ctx, cfg)
    detached = bool(cfg.get("main", {}).get("daemonize", False)) and not foreground
    logger = make_logger(ctx, cfg, detached)

    if not detached:
        daemon_module.run_foreground(cfg, specs, logger)
        return

    click.echo("Starting daemon...")
    try:
        daemon_module.run_daemon(cfg, specs, logger)
    except daemon_module.DaemonError as e:
        logger.error(f"failed to daemonize: {e}")
        click.echo(f"Error starting daemon: {e}", err=True)
        ctx.exit(EXIT_DAEMON)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--recursive", is_flag=True, help="Enable recursive mode.")
@click.option("--maxdepth", type=int, default=0, metavar="LEVEL", help="Maximum depth of recursion.")
@click.option("--event", "events", default=None, metavar="EVENT", help="Events to watch (comma separated).")
@click.option("--mount", is_flag=True, help="Ignore files on other filesystems.")
@click.option("--readable", is_flag=True, help="Only report readable files.")
@click.option("--writable", is_flag=True, help="Only report writable files.")
@click.option("--executable", is_flag=True, help="Only report executable files.")
@click.option("--size", default=None, metavar="[+|-]N[bkMG]", help="Check file size.")
@click.option("--type", "file_type", default=None, metavar="TYPE", help="Check file type.")
@click.option("--user", default=None, metavar="NAME", help="Check owner user.")
@click.option("--group", default=None, metavar="NAME", help="Check owner group.")
@click.option("--include", default=None, metavar="LIST", help="Include files list.")
@click.option("--exclude", default=None, metavar="LIST", help="Exclude files list.")
@click.option("--exec", "command", default=None, metavar="COMMAND", help="Execute command on event.")
@click.option("--print", "print_path", is_flag=True, help="Print filename on event, followed by a newline.")
@click.option("--print0", is_flag=True, help="Print filename on event, followed by a null character.")
@click.pass_context
def watch(ctx, path, recursive, maxdepth, events, mount, readable, writable, executable, size,
          file_type, user, group, include, exclude, command, print_path, print0):
    """
    Watch a single PATH in the foreground, without a configuration file.
    """
    raw = {
        "name": "watcher",
        "path": path,
        "recursive": recursive,
        "max_depth": maxdepth,
        "events": events,
        "mount": mount,
        "readable": readable,
        "writable": writable,
        "executable": executable,
        "size": size,
        "type": file_type,
        "user": user,
        "group": group,
        "include": include,
        "exclude": exclude,
        "exec": command,
        "print": print_path,
        "print0": print0,
    }
    try:
        spec = config.parse_watcher(raw)
    except config.ConfigError as e:
        click.echo(f"Error in watcher options: {e}", err=True)
        ctx.exit(EXIT_WATCHERS)

    logger = make_logger(ctx, {}, detached=False)
    daemon_module.run_foreground({}, [spec], logger)


def _daemon_pid(ctx):
    cfg = load_main_config(ctx)
    pid_file = daemon_module.get_pid_file(cfg)
    pid = daemon_module.read_pid(pid_file)
    if pid is None:
        click.echo("Daemon is not running (pid file not found).")
    return pid, pid_file


def _send_signal(ctx, signum, description):
    pid, _ = _daemon_pid(ctx)
    if pid is None:
        return False
    try:
        os.kill(pid, signum)
    except OSError as e:
        click.echo(f"Error signalling daemon: {e}", err=True)
        return False
    click.echo(f"Sent {description} to daemon (pid {pid}).")
    return True


@main.command()
@click.pass_context
def stop(ctx):
    """
    Stop the PathWatch daemon.
    """
    pid, pid_file = _daemon_pid(ctx)
    if pid is None:
        return
    try:
        os.kill(pid, signal.SIGTERM)
        click.echo(f"Sent SIGTERM to daemon (pid {pid}).")
        time.sleep(2)
        if os.path.exists(pid_file) and not psutil.pid_exists(pid):
            os.remove(pid_file)
    except OSError as e:
        click.echo(f"Error stopping daemon: {e}")


@main.command()
@click.pass_context
def reload(ctx):
    """
    Make the daemon reload its configuration.
    """
    _send_signal(ctx, signal.SIGHUP, "SIGHUP")


@main.command()
@click.pass_context
def pause(ctx):
    """
    Stop all watchers of the daemon without exiting.
    """
    _send_signal(ctx, signal.SIGUSR2, "SIGUSR2")


@main.command()
@click.pass_context
def resume(ctx):
    """
    Start all watchers of the daemon again.
    """
    _send_signal(ctx, signal.SIGUSR1, "SIGUSR1")


@main.command()
@click.pass_context
def status(ctx):
    """
    Check the status of the PathWatch daemon.
    Displays process info (memory, CPU, threads, start time) and watcher details.
    """
    pid, _ = _daemon_pid(ctx)
    if pid is None:
        return
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        click.echo("Daemon process not found.")
        return

    status_table = Table(title="PathWatch Daemon Status")
    status_table.add_column("Property", style="cyan")
    status_table.add_column("Value", style="magenta")
    status_table.add_row("PID", str(proc.pid))
    status_table.add_row("CPU %", f"{proc.cpu_percent(interval=0.1)}")
    status_table.add_row("Memory %", f"{proc.memory_percent():.2f}")
    status_table.add_row("Memory RSS", str(proc.memory_info().rss))
    status_table.add_row("Threads", str(proc.num_threads()))
    status_table.add_row("Start Time", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(proc.create_time())))

    cfg = load_main_config(ctx)
    try:
        specs = config.load_watcher_specs(cfg)
        status_table.add_row("Watchers Count", str(len(specs)))
        status_table.add_row("Watcher Names", ", ".join(spec.name for spec in specs))
    except config.ConfigError as e:
        status_table.add_row("Watchers", f"Error loading: {e}")

    Console().print(status_table)


if __name__ == "__main__":
    main()
