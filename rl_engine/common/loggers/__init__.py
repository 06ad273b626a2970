"""
Loggers
====================

- Logger frontend (step inference, buffering, console printing)
- Writer backends (CSV, JSONL, TensorBoard)
- A builder that constructs a Logger with selected backends

Typical usage
-------------
from rl_engine.common.loggers import build_logger

logger = build_logger(log_dir="./runs", exp_name="cartpole_dqn")
logger.log({"loss/q": 0.1}, step=1, prefix="train")
logger.close()
"""

from __future__ import annotations

# -----------------------------------------------------------------------------
# Core logger
# -----------------------------------------------------------------------------
from .logger import Logger

# -----------------------------------------------------------------------------
# Writer base + concrete writers
# -----------------------------------------------------------------------------
from .base_writer import Writer
from .csv_writer import CSVWriter
from .jsonl_writer import JSONLWriter
from .tensorboard_writer import TensorBoardWriter

# -----------------------------------------------------------------------------
# Builder utility
# -----------------------------------------------------------------------------
from .logger_builder import build_logger

__all__ = [
    # core
    "Logger",

    # writers
    "Writer",
    "CSVWriter",
    "JSONLWriter",
    "TensorBoardWriter",

    # builder
    "build_logger",
]
