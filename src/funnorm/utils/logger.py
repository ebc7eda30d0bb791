#!/usr/bin/env python
# coding: utf-8


"""
Package logger for funnorm.

Records go to stdout and to a timestamped file under ``<output_dir>/log/``
(``output_dir`` defaults to ``$FUNNORM_LOG_DIR`` or ``output``). The logger
also owns at most one ``tqdm`` bar at a time:

- ``logger.progress("Normalizing quantiles", total=n)`` opens it
- ``logger.progress_update(k)`` advances it
- the next emitted log record closes it first, so bar redraws never
  interleave with log lines

Modules import the configured instance as ``from funnorm.utils.logger import logger``
or fetch it with ``get_logger()``.
"""


import logging
import os
import sys
from datetime import datetime
from typing import Optional

from tqdm import tqdm

LOGGER_NAME = "funnorm"


class ProgressAwareLogger(logging.Logger):
    """Logger holding one temporary progress bar, closed by the next record."""

    def __init__(self, name) -> None:
        super().__init__(name)
        self._pbar = None

    def _close_pbar(self) -> None:
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def progress(self, msg: str, total: int) -> None:
        """Open a progress bar of ``total`` steps, replacing any active one."""
        self._close_pbar()
        self._pbar = tqdm(total=total, desc=msg, bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt}")

    def progress_update(self, n: int = 1) -> None:
        """Advance the active bar by ``n``; no-op without one."""
        if self._pbar is not None:
            self._pbar.update(n)

    def _log(self, level, msg, args, **kwargs) -> None:
        # every emitted record passes through here
        self._close_pbar()
        super()._log(level, msg, args, **kwargs)


def _configure_logger(output_dir: Optional[str] = None) -> ProgressAwareLogger:
    """
    Attach console and file handlers to the package logger once.

    Parameters
    ----------
    output_dir : str, optional
        Log files are written to ``<output_dir>/log/funnorm_<timestamp>.log``.

    Returns
    -------
    ProgressAwareLogger
    """
    previous = logging.getLoggerClass()
    logging.setLoggerClass(ProgressAwareLogger)
    try:
        log = logging.getLogger(LOGGER_NAME)
    finally:
        logging.setLoggerClass(previous)

    if log.hasHandlers():
        return log

    log.setLevel(logging.INFO)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    log.addHandler(console)

    if output_dir is None:
        output_dir = os.environ.get("FUNNORM_LOG_DIR", "output")
    log_dir = os.path.join(output_dir, "log")
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    file_handler = logging.FileHandler(
        os.path.join(log_dir, f"{LOGGER_NAME}_{timestamp}.log"), encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    log.addHandler(file_handler)

    return log


logger = _configure_logger()


def get_logger() -> ProgressAwareLogger:
    """Return the configured package logger."""
    return logger
