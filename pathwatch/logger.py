import logging
import logging.handlers
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SYSLOG_FORMAT = '%(name)s[%(process)d]: %(levelname)s - %(message)s'


def parse_level(level, default=logging.INFO):
    """Turn a level name ('DEBUG', 'info', ...) or number into a logging level."""
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), default)


def setup_logger(name, log_dir=None, log_filename=None, level=logging.INFO, console=True,
                 syslog_facility=None):
    """
    Set up and return a logger with file, console and/or syslog handlers.

    Args:
        name (str): The logger name.
        log_dir (str): Directory where the log file will be stored, None for no file.
        log_filename (str): Log file name.
        level (int): Logging level.
        console (bool): Whether to add a console handler.
        syslog_facility (str): Syslog facility name (e.g. 'daemon'), None for no syslog.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # Clear out any existing handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    if log_dir and log_filename:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, log_filename))
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if syslog_facility:
        address = '/dev/log' if os.path.exists('/dev/log') else ('localhost', 514)
        syslog_handler = logging.handlers.SysLogHandler(
            address=address,
            facility=logging.handlers.SysLogHandler.facility_names.get(
                syslog_facility.lower(), logging.handlers.SysLogHandler.LOG_DAEMON
            ),
        )
        syslog_handler.setLevel(level)
        syslog_handler.setFormatter(logging.Formatter(SYSLOG_FORMAT))
        logger.addHandler(syslog_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


def setup_service_logger(config, detached, verbose=False, debug=False):
    """
    Build the service logger from the [logging] section of the configuration.

    Detached runs log to syslog or to the log file. Foreground runs log to
    the console: errors only by default, INFO when verbose, DEBUG when debug.
    """
    log_cfg = config.get("logging", {})
    if not detached:
        if debug:
            level = logging.DEBUG
        elif verbose:
            level = logging.INFO
        else:
            level = logging.ERROR
        return setup_logger("pathwatch", level=level, console=True)

    level = parse_level(log_cfg.get("level", "INFO"))
    if debug:
        level = logging.DEBUG
    if log_cfg.get("use_syslog", False):
        return setup_logger(
            "pathwatch",
            level=level,
            console=False,
            syslog_facility=log_cfg.get("syslog_facility", "daemon"),
        )

    config_dir = os.path.dirname(config.get("__config_path__") or "./config.toml")
    log_dir = os.path.join(config_dir, log_cfg.get("log_dir", "logs"))
    return setup_logger(
        "pathwatch",
        log_dir,
        log_cfg.get("log_file", "pathwatch.log"),
        level=level,
        console=False,
    )
