"""
Logging setup for qscan.

Logs go to stderr so that stdout stays clean for --json output. JSON
formatting is available for batch jobs whose logs are shipped elsewhere.
"""

import logging
import os
import sys
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from qscan import __version__

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class QscanJsonFormatter(jsonlogger.JsonFormatter):
    """Adds level, logger, service, version and the Slurm job id to every record."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = "qscan"
        log_record["version"] = __version__

        job_id = os.getenv("SLURM_JOB_ID")
        if job_id:
            log_record["slurm_job_id"] = job_id


def setup_logging(log_level: str = "WARNING", log_format: str = "text"):
    """
    Set up logging for qscan.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
    """
    level = getattr(logging, log_level.upper(), logging.WARNING)

    if log_format == "json":
        formatter = QscanJsonFormatter("%(message)s", timestamp=True)
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    root_logger.debug(f"Logging configured (level={log_level}, format={log_format})")
