"""Loguru sinks plus structured records keyed by research run.

Code executing on behalf of a run enters ``run_context(run_id)``; every record
emitted inside it (including from tasks spawned there) carries the run id in
``extra`` and in the structured payloads below.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from deepresearch.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(parents=True, exist_ok=True)

_run_fields: ContextVar[dict[str, Any]] = ContextVar("run_fields", default={})

logger.remove()
logger.configure(extra={"run_id": "-"})

logger.add(
    sys.stderr,
    format=(
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<magenta>{extra[run_id]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    ),
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "deepresearch_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[run_id]} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "openai._base_client",
    "trafilatura",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


@contextmanager
def run_context(run_id: Optional[str] = None, **fields: Any) -> Iterator[dict[str, Any]]:
    """Attach run fields to every record logged inside the block.

    Nested contexts extend the outer one, so a worker can add its
    ``sub_question_index`` under the orchestrator's ``run_id``.
    """
    merged = dict(_run_fields.get())
    if run_id is not None:
        merged["run_id"] = run_id
    merged.update(fields)
    token = _run_fields.set(merged)
    try:
        with logger.contextualize(**merged):
            yield merged
    finally:
        _run_fields.reset(token)


def current_run_fields() -> dict[str, Any]:
    return dict(_run_fields.get())


def _record(kind: str, fields: dict[str, Any], **explicit: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"kind": kind, "at": datetime.now(timezone.utc).isoformat()}
    payload.update(current_run_fields())
    payload.update({k: v for k, v in explicit.items() if v is not None})
    payload.update({k: v for k, v in fields.items() if v is not None})
    return payload


def _emit(level: str, payload: dict[str, Any]) -> None:
    logger.log(level, f"{payload['kind']} {json.dumps(payload, default=str, sort_keys=True)}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> dict[str, Any]:
    """Record one model request made for the current run (if any)."""
    payload = _record(
        "llm_call",
        {},
        model=model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        duration_ms=duration_ms,
        status="error" if error else status,
        error=error,
    )
    _emit("ERROR" if error else "INFO", payload)
    return payload


def log_run_step(
    run_id: str,
    stage: str,
    status: str,
    message: str,
    *,
    sub_question: Optional[str] = None,
    **data: Any,
) -> dict[str, Any]:
    """Mirror a persisted run event into the log stream."""
    payload = _record(
        "run_step",
        data,
        run_id=run_id,
        stage=stage,
        status=status,
        message=message,
        sub_question=sub_question,
    )
    _emit("WARNING" if status == "failed" else "INFO", payload)
    return payload


def log_run_outcome(run_id: str, status: str, **metrics: Any) -> dict[str, Any]:
    payload = _record("run_outcome", metrics, run_id=run_id, status=status)
    _emit("WARNING" if status == "failed" else "INFO", payload)
    return payload


def log_db_operation(
    operation: str,
    table: str,
    status: str = "success",
    *,
    run_id: Optional[str] = None,
    rows: Optional[int] = None,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> dict[str, Any]:
    payload = _record(
        "db_operation",
        {},
        operation=operation,
        table=table,
        status=status,
        run_id=run_id,
        rows=rows,
        details=details,
        error=error,
    )
    _emit("ERROR" if error else "DEBUG", payload)
    return payload


def log_service_event(event: str, message: str, **fields: Any) -> dict[str, Any]:
    """Process-level lifecycle record (startup, recovery)."""
    payload = _record("service_event", fields, event=event, message=message)
    _emit("INFO", payload)
    return payload
