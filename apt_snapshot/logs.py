# SPDX-License-Identifer: GPL-3.0-or-later

import logging
import os
import sys
from pathlib import PurePath
from typing import Any


class LoggerFactory:
    """Creates loggers for classes and modules.

    Loggers created with a `logger_id` belong to one mirror: their records
    are tagged with the mirror ID and also go to the mirror log file, if one
    was registered with `add_log_file()`. The log file registered for the
    `None` ID receives every record.
    """

    DEFAULT_LOGLEVEL = getattr(
        logging,
        os.getenv("APT_SNAPSHOT_LOGLEVEL", "info").upper(),
    )
    DEFAULT_FORMAT = (
        "%(asctime)s: [%(process)d] %(levelname)s %(name_abbr)s %(message)s"
    )
    # Held at warning unless debugging
    LIBRARY_LOGGERS = ("httpx", "httpcore", "hpack")

    FILES: dict[Any, PurePath] = {}
    FILE_HANDLERS: dict[Any, logging.FileHandler] = {}
    FILE_MODE = "w"
    LOGGERS: dict[str, logging.Logger] = {}

    @staticmethod
    def init_logging():
        logging.basicConfig(
            format=LoggerFactory.DEFAULT_FORMAT,
            level=LoggerFactory.DEFAULT_LOGLEVEL,
            stream=sys.stderr,
        )
        logging.getLogger().handlers[0].addFilter(NameAbbrFilter())

        if LoggerFactory.DEFAULT_LOGLEVEL != logging.DEBUG:
            for name in LoggerFactory.LIBRARY_LOGGERS:
                logging.getLogger(name).setLevel(logging.WARNING)

    @staticmethod
    def set_level(level: int):
        """Change the level of the root logger and of every logger created so
        far. `--quiet` uses it to report errors only."""
        LoggerFactory.DEFAULT_LOGLEVEL = level
        logging.getLogger().setLevel(level)

        for log in LoggerFactory.LOGGERS.values():
            log.setLevel(level)

    @staticmethod
    def enable_append_logs():
        LoggerFactory.FILE_MODE = "a"

    @staticmethod
    def get_logger(obj: Any, logger_id: Any | None = None) -> logging.Logger:
        if isinstance(obj, str):
            log_name = obj
        elif isinstance(obj, type):
            log_name = f"{obj.__module__}.{obj.__qualname__}"
        else:
            log_name = f"{obj.__class__.__module__}.{obj.__class__.__qualname__}"

        if logger_id is not None:
            log_name = f"{log_name}[{logger_id}]"

        log = logging.getLogger(log_name)
        log.setLevel(LoggerFactory.DEFAULT_LOGLEVEL)
        LoggerFactory.LOGGERS[log_name] = log

        if logger_id is not None and logger_id in LoggerFactory.FILES:
            handler = LoggerFactory._file_handler(logger_id)
            if handler not in log.handlers:
                log.addHandler(handler)

        return log

    @staticmethod
    def add_log_file(logger_id: Any, file: PurePath):
        LoggerFactory.FILES[logger_id] = file

        if logger_id is None:
            logging.getLogger().addHandler(LoggerFactory._file_handler(None))

    @staticmethod
    def close_log_files():
        for logger_id, handler in LoggerFactory.FILE_HANDLERS.items():
            if logger_id is None:
                logging.getLogger().removeHandler(handler)

            for log in LoggerFactory.LOGGERS.values():
                log.removeHandler(handler)

            handler.close()

        LoggerFactory.FILE_HANDLERS.clear()
        LoggerFactory.FILES.clear()

    @staticmethod
    def _file_handler(logger_id: Any) -> logging.FileHandler:
        if logger_id not in LoggerFactory.FILE_HANDLERS:
            handler = logging.FileHandler(
                LoggerFactory.FILES[logger_id],
                mode=LoggerFactory.FILE_MODE,
                encoding="utf-8",
            )
            handler.setFormatter(logging.Formatter(LoggerFactory.DEFAULT_FORMAT))
            handler.addFilter(NameAbbrFilter())

            LoggerFactory.FILE_HANDLERS[logger_id] = handler

        return LoggerFactory.FILE_HANDLERS[logger_id]


class NameAbbrFilter(logging.Filter):
    """Shortens `apt_snapshot.transfer.TransferManager[ubuntu]` to
    `ubuntu: a_s.t.TransferManager`"""

    def filter(self, record: logging.LogRecord):
        name, _, mirror_id = record.name.partition("[")
        modules = name.split(".")

        name_abbr = ".".join(
            ["_".join(p[:1] for p in m.split("_")) for m in modules[:-1]]
            + [modules[-1]]
        )
        if mirror_id:
            name_abbr = f"{mirror_id.rstrip(']')}: {name_abbr}"

        record.name_abbr = name_abbr

        return True


LoggerFactory.init_logging()
