import os
import re

import toml
import yaml

from pathwatch.models import (EVENT_KINDS, FILE_TYPE_ALIASES, FILE_TYPES,
                              SIZE_EQUAL, SIZE_GREATER, SIZE_LESS, Action,
                              SizePredicate, WatcherSpec)

DEFAULT_CONFIG_PATH = "./config.toml"
ENV_CONFIG_DIR_VAR = "PATHWATCH_CONFIG_DIR"
USER_CONFIG_PATH = os.path.join("~", ".pathwatch", "config.toml")
SYSTEM_CONFIG_PATH = "/etc/pathwatch/config.toml"

DEFAULT_PID_FILE = "/var/run/pathwatch/pathwatch.pid"
DEFAULT_MOUNT_POLL_INTERVAL = 2.0

SIZE_RE = re.compile(r"^\s*([+-]?)(\d+)\s*([bkMG]?)\s*$")
SIZE_SIGNS = {"": SIZE_EQUAL, "+": SIZE_GREATER, "-": SIZE_LESS}
SIZE_UNIT_SUFFIXES = {"": "bytes", "b": "bytes", "k": "KiB", "M": "MiB", "G": "GiB"}

WATCHER_KEYS = {
    "name", "path", "recursive", "max_depth", "mount", "readable", "writable",
    "executable", "size", "type", "user", "group", "events", "include",
    "exclude", "exec", "print", "print0",
}


class ConfigError(Exception):
    """Raised for missing, unreadable or invalid configuration."""

    pass


def find_config_path(cli_config_path=None):
    """
    Locate the main configuration file.

    Precedence:
      1. cli_config_path if provided.
      2. Environment variable PATHWATCH_CONFIG_DIR (looking for config.toml).
      3. ./config.toml
      4. ~/.pathwatch/config.toml
      5. /etc/pathwatch/config.toml

    Returns:
        str: Path of the configuration file.
    """
    if cli_config_path:
        if not os.path.exists(cli_config_path):
            raise ConfigError(f"Configuration file not found: {cli_config_path}")
        return cli_config_path

    if os.environ.get(ENV_CONFIG_DIR_VAR):
        config_path = os.path.join(os.environ[ENV_CONFIG_DIR_VAR], "config.toml")
        if not os.path.exists(config_path):
            raise ConfigError(f"Configuration file not found: {config_path}")
        return config_path

    for candidate in (DEFAULT_CONFIG_PATH, os.path.expanduser(USER_CONFIG_PATH), SYSTEM_CONFIG_PATH):
        if os.path.exists(candidate):
            return candidate

    raise ConfigError("The configuration file doesn't exist or cannot be read.")


def load_config(cli_config_path=None):
    """
    Load the main configuration from a TOML file.

    Returns:
        dict: The configuration settings, with the resolved file path stored
        under "__config_path__".
    """
    config_path = os.path.abspath(find_config_path(cli_config_path))
    try:
        with open(config_path, "r") as f:
            config_data = toml.load(f)
    except (OSError, toml.TomlDecodeError) as e:
        raise ConfigError(f"{config_path}: error in configuration file ({e})")

    for section in ("main", "logging"):
        if not isinstance(config_data.get(section, {}), dict):
            raise ConfigError(f"{config_path}: [{section}] must be a table")
    get_mount_poll_interval(config_data)

    config_data["__config_path__"] = config_path
    return config_data


def get_mount_poll_interval(config):
    """Seconds between mount-table checks from [main], 0 disables them."""
    interval = config.get("main", {}).get("mount_poll_interval", DEFAULT_MOUNT_POLL_INTERVAL)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval < 0:
        raise ConfigError(f"invalid mount_poll_interval '{interval}'")
    return float(interval)


def load_watchers_config(watchers_path):
    """
    Load watcher definitions from a YAML file.

    Args:
        watchers_path (str): Path to the YAML configuration file.

    Returns:
        dict: Watchers configuration with key 'watchers'.
    """
    if not os.path.exists(watchers_path):
        raise ConfigError(f"Watchers configuration file not found: {watchers_path}")
    try:
        with open(watchers_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"{watchers_path}: error in watchers file ({e})")
    if not isinstance(data, dict):
        raise ConfigError(f"{watchers_path}: expected a mapping with a 'watchers' list")
    data.setdefault("watchers", [])
    if not isinstance(data["watchers"] or [], list):
        raise ConfigError(f"{watchers_path}: 'watchers' must be a list")
    return data


def load_watchers_configs(path):
    """
    Load watcher definitions from a YAML file or a directory containing YAML files.
    If a directory is provided, all .yaml/.yml files are loaded and aggregated
    in file name order.

    Args:
        path (str): Path to a YAML file or directory.

    Returns:
        dict: Aggregated watchers configuration with key 'watchers'.
    """
    if os.path.isdir(path):
        aggregated = {"watchers": []}
        for filename in sorted(os.listdir(path)):
            if filename.endswith((".yaml", ".yml")):
                data = load_watchers_config(os.path.join(path, filename))
                aggregated["watchers"].extend(data.get("watchers") or [])
        return aggregated
    else:
        return load_watchers_config(path)


def raw_watchers(config):
    """
    Collect the raw watcher mappings referenced by a main configuration:
    the YAML file/directory under [watchers] configs, then inline
    [[watcher]] tables.
    """
    raw = []
    section = config.get("watchers", {})
    if not isinstance(section, dict):
        raise ConfigError("[watchers] must be a table")
    configs = section.get("configs")
    if configs is not None and not isinstance(configs, str):
        raise ConfigError(f"invalid watchers configs '{configs}', expected a path")
    if configs:
        config_dir = os.path.dirname(config.get("__config_path__") or DEFAULT_CONFIG_PATH)
        configs = os.path.join(config_dir, os.path.expanduser(configs))
        raw.extend(load_watchers_configs(configs).get("watchers") or [])

    inline = config.get("watcher", [])
    if not isinstance(inline, list):
        raise ConfigError("[[watcher]] must be an array of tables")
    raw.extend(inline)
    return raw


def load_watcher_specs(config):
    """Build the validated WatcherSpec list for a main configuration."""
    return build_watcher_specs(raw_watchers(config))


def build_watcher_specs(raw_list):
    if not raw_list:
        raise ConfigError("no watcher found")
    specs = []
    names = set()
    for raw in raw_list:
        spec = parse_watcher(raw)
        if spec.name in names:
            raise ConfigError(f"{spec.name}: duplicate watcher name")
        names.add(spec.name)
        specs.append(spec)
    return specs


def _string_list(name, key, value):
    if value is None:
        return ()
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        raise ConfigError(f"{name}: invalid {key} list")
    if any(not item for item in items):
        raise ConfigError(f"{name}: empty entry in {key} list")
    return tuple(items)


def _boolean(name, key, value):
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "yes", "1", "false", "no", "0"):
        return value.lower() in ("true", "yes", "1")
    raise ConfigError(f"{name}: invalid boolean for {key}")


def parse_size(value):
    """
    Parse a size predicate such as '+10k', '-2M' or '512'.

    A leading '+' means greater than, '-' less than, none equal. The unit
    suffix is one of b (bytes, default), k, M, G.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    match = SIZE_RE.match(value) if isinstance(value, str) else None
    if not match:
        raise ConfigError(f"invalid size '{value}'")
    sign, magnitude, unit = match.groups()
    return SizePredicate(
        comparator=SIZE_SIGNS[sign],
        magnitude=int(magnitude),
        unit=SIZE_UNIT_SUFFIXES[unit],
    )


def parse_file_type(value):
    file_type = FILE_TYPE_ALIASES.get(value, value)
    if file_type not in FILE_TYPES:
        raise ConfigError(f"invalid type '{value}'")
    return file_type


def parse_watcher(raw):
    """
    Validate one raw watcher mapping and build its WatcherSpec.

    Raises:
        ConfigError: naming the watcher and the invalid setting.
    """
    if not isinstance(raw, dict):
        raise ConfigError("watcher definition must be a mapping")

    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError("watcher without a name")

    unknown = set(raw) - WATCHER_KEYS
    if unknown:
        raise ConfigError(f"{name}: unknown settings {', '.join(sorted(unknown))}")

    path = raw.get("path")
    if not path or not isinstance(path, str):
        raise ConfigError(f"{name}: invalid path")
    root = os.path.normpath(os.path.abspath(os.path.expanduser(path)))
    if not os.path.exists(root):
        raise ConfigError(f"{name}: file/path doesn't exist")
    if os.path.isdir(root):
        if not os.access(root, os.R_OK | os.X_OK):
            raise ConfigError(f"{name}: bad permissions on path")
    elif not os.access(root, os.R_OK):
        raise ConfigError(f"{name}: bad permissions on file")

    recursive = _boolean(name, "recursive", raw.get("recursive"))
    if recursive and not os.path.isdir(root):
        raise ConfigError(f"{name}: recursion is enabled but path is not a directory")

    max_depth = raw.get("max_depth", 0)
    if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 0:
        raise ConfigError(f"{name}: invalid maximum depth of recursion")

    events = _string_list(name, "events", raw.get("events"))
    for event in events:
        if event not in EVENT_KINDS:
            raise ConfigError(f"{name}: invalid event '{event}'")

    size = None
    if raw.get("size") is not None:
        try:
            size = parse_size(raw["size"])
        except ConfigError as e:
            raise ConfigError(f"{name}: {e}")

    file_type = None
    if raw.get("type") is not None:
        try:
            file_type = parse_file_type(raw["type"])
        except ConfigError as e:
            raise ConfigError(f"{name}: {e}")

    command = raw.get("exec")
    if command is not None and (not isinstance(command, str) or not command.strip()):
        raise ConfigError(f"{name}: invalid exec command")

    return WatcherSpec(
        name=name,
        root=root,
        recursive=recursive,
        max_depth=max_depth if recursive else 0,
        mount=_boolean(name, "mount", raw.get("mount")),
        readable=_boolean(name, "readable", raw.get("readable")),
        writable=_boolean(name, "writable", raw.get("writable")),
        executable=_boolean(name, "executable", raw.get("executable")),
        size=size,
        file_type=file_type,
        user=str(raw["user"]) if raw.get("user") is not None else None,
        group=str(raw["group"]) if raw.get("group") is not None else None,
        events=events,
        includes=_string_list(name, "include", raw.get("include")),
        excludes=_string_list(name, "exclude", raw.get("exclude")),
        action=Action(
            command=command,
            print_path=_boolean(name, "print", raw.get("print")),
            print0=_boolean(name, "print0", raw.get("print0")),
        ),
    )
