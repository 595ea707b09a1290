"""
Configuration of the package -- logging, timeouts and locations, mostly driven by envvars
"""

import os

connection_timeout_envvar = "RUNPROXY_CONNECTION_TIMEOUT"
extensions_path_envvar = "RUNPROXY_EXTENSIONS_PATH"
log_level_envvar = "RUNPROXY_LOG_LEVEL"

# exported to the worker's environment
worker_address_envvar = "RUNPROXY_WORKER_ADDRESS"
session_envvar = "RUNPROXY_SESSION"

default_connection_timeout_sec = 90


def connection_timeout_ms() -> int:
    """How long we wait for the worker to complete the handshake after it has been launched"""
    raw = os.getenv(connection_timeout_envvar)
    if not raw:
        return default_connection_timeout_sec * 1_000
    try:
        return int(float(raw) * 1_000)
    except ValueError:
        raise ValueError(f"invalid {connection_timeout_envvar}={raw!r}, expected seconds")


def extension_directories() -> list[str]:
    raw = os.getenv(extensions_path_envvar, "")
    return [e for e in raw.split(os.pathsep) if e]


logging_config = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)s %(process)d %(threadName)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "runproxy": {
            "level": os.getenv(log_level_envvar, "INFO"),
            "handlers": ["default"],
            "propagate": False,
        },
    },
    "root": {
        "level": "WARNING",
        "handlers": ["default"],
    },
}
