"""
Logging utilities with structured logging support.
"""
from loguru import logger
import sys
import os
from pathlib import Path


def setup_logging(
    logs_dir: str,
    level: str = "INFO",
    rotation: str = "1 day",
    retention: str = "30 days",
    format_type: str = "text",
    enable_console: bool = True
) -> None:
    """
    Set up logging with rotation and separate audit outputs.

    Args:
        logs_dir: Directory for log files
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        rotation: When to rotate logs (e.g., "1 day", "500 MB")
        retention: How long to keep logs (e.g., "30 days")
        format_type: Format type ("json" or "text")
        enable_console: Whether to log to console
    """
    Path(logs_dir).mkdir(parents=True, exist_ok=True)

    logger.remove()

    serialize = format_type == "json"
    log_format = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
        "{level: <8} | "
        "{name}:{function}:{line} | "
        "{message}"
    )

    if enable_console:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{module}</cyan>:<cyan>{function}</cyan> | "
                "<level>{message}</level>"
            ),
            level=level,
            colorize=not serialize,
            serialize=serialize,
            enqueue=True
        )

    logger.add(
        os.path.join(logs_dir, "runtime.log"),
        format=log_format,
        level="INFO",
        rotation=rotation,
        retention=retention,
        compression="zip",
        enqueue=True,
        serialize=serialize
    )

    logger.add(
        os.path.join(logs_dir, "errors.log"),
        format=log_format,
        level="ERROR",
        rotation=rotation,
        retention="60 days",
        compression="zip",
        enqueue=True,
        serialize=serialize
    )

    if level == "DEBUG":
        logger.add(
            os.path.join(logs_dir, "debug.log"),
            format=log_format,
            level="DEBUG",
            rotation=rotation,
            retention="7 days",
            compression="zip",
            enqueue=True,
            serialize=serialize
        )

    # Audit trail of orders, fills and detection signals
    logger.add(
        os.path.join(logs_dir, "trades.log"),
        format=log_format,
        level="INFO",
        rotation=rotation,
        retention="90 days",
        compression="zip",
        enqueue=True,
        serialize=serialize,
        filter=_is_audit_record
    )

    logger.info(f"Logging initialized: level={level}, dir={logs_dir}, format={format_type}")


def _is_audit_record(record) -> bool:
    message = record["message"]
    return message.startswith(("TRADE", "ORDER", "SIGNAL"))


def log_trade(action: str, code: str, qty: int, price, **kwargs) -> None:
    """
    Log a trade event with structured data.

    Args:
        action: Trade action (e.g., "BUY", "SELL", "TP1")
        code: Instrument code
        qty: Quantity
        price: Executed or reference price
        **kwargs: Additional trade metadata
    """
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    msg = f"TRADE | {action} | {code} | qty={qty} | price={price}"
    if extra_info:
        msg += f" | {extra_info}"
    logger.info(msg)


def log_order(action: str, code: str, qty: int, **kwargs) -> None:
    """Log an order submission or broker response."""
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    msg = f"ORDER | {action} | {code} | qty={qty}"
    if extra_info:
        msg += f" | {extra_info}"
    logger.info(msg)


def log_signal(signal_type: str, code: str, reason: str = "", **metrics) -> None:
    """
    Log a detection or exit signal.

    Args:
        signal_type: Signal type name
        code: Instrument code
        reason: Human readable trigger description
        **metrics: Metric snapshot that caused the signal
    """
    parts = [f"SIGNAL | {signal_type} | {code}"]
    parts.extend(f"{k}={v}" for k, v in metrics.items())
    if reason:
        parts.append(reason)
    logger.info(" | ".join(parts))


def log_error_with_context(error: Exception, context: str, **kwargs) -> None:
    """
    Log an error with additional context.

    Args:
        error: Exception object
        context: Context description
        **kwargs: Additional context metadata
    """
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    msg = f"ERROR | {context} | {type(error).__name__}: {str(error)}"
    if extra_info:
        msg += f" | {extra_info}"
    logger.opt(exception=error).error(msg)
