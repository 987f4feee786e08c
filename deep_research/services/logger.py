"""Centralized logging service using loguru."""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from deep_research.config import settings

# Configure loguru
LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

# Add file handler
logger.add(
    LOG_DIR / "deep_research_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",  # New file at midnight
    retention="7 days",
    compression="zip",
)

# Reduce noise from framework/network libraries
import logging

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncpg",
    "weasyprint",
    "fontTools",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_provider_call(
    provider: str,
    model: str,
    caller: str,
    duration_ms: int = 0,
    attempt: int = 1,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log one external provider request."""
    call_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "provider": provider,
        "model": model,
        "caller": caller,
        "attempt": attempt,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"PROVIDER_CALL_FAILED: {call_data}")
    else:
        logger.info(f"PROVIDER_CALL: {call_data}")


def log_research_step(
    run_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a research pipeline step."""
    step_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
        "step_type": step_type,
        "status": status,
        "data": data,
    }
    logger.info(f"RESEARCH_STEP: {step_data}")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation."""
    op_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "operation": operation,
        "table": table,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"DB_OPERATION_FAILED: {op_data}")
    else:
        logger.info(f"DB_OPERATION: {op_data}")


def log_deep_research_transition(
    event: str,
    *,
    topic_id: str,
    model_run_id: str,
    provider: str,
    job_id: str,
    attempt: int,
    step_id: Optional[str] = None,
    provider_response_id: Optional[str] = None,
    status: Optional[str] = None,
    message: Optional[str] = None,
) -> None:
    """Log a lane job lifecycle transition."""
    transition = {
        "event": f"deep_research.{event}",
        "topic_id": topic_id,
        "model_run_id": model_run_id,
        "provider": provider,
        "step_id": step_id,
        "job_id": job_id,
        "attempt": attempt,
        "provider_response_id": provider_response_id,
        "status": status,
        "message": message,
    }
    if event in {"failed", "guard_failed"}:
        logger.warning(f"DEEP_RESEARCH: {transition}")
    else:
        logger.info(f"DEEP_RESEARCH: {transition}")


def log_integrity_error(kind: str, message: str, **kwargs) -> None:
    """Log an identifier mismatch or blocked cross-run write."""
    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "kind": kind,
        "message": message,
        **kwargs,
    }
    logger.error(f"INTEGRITY_ERROR: {error_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
