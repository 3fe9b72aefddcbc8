"""Logging utilities for the FTP provider."""
import logging
import sys

from ftpprovider.core.config import ProviderSettings
from ftpprovider.core.operation_context import get_operation_id


def configure_logging(
    settings: ProviderSettings, *,
    logger_name: str = "ftpprovider",
) -> logging.Logger:
    """Configure the root logger and return the package logger.

    Args:
        settings: Provider settings containing log-level information.
        logger_name: Name of the logger to retrieve.

    Returns:
        Configured logger instance.
    """

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(filename)s:%(lineno)d] - operation_id=%(operation_id)s - %(message)s"
        ),
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs) -> logging.LogRecord:
        record = old_factory(*args, **kwargs)
        record.operation_id = get_operation_id() or "system"
        return record

    logging.setLogRecordFactory(record_factory)

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_level)

    if not settings.log_wire_traffic:
        logging.getLogger("ftpprovider.core.ftp_control").setLevel(max(log_level, logging.INFO))

    logger.debug("Logging configured with level %s", logging.getLevelName(log_level))
    return logger
