"""
JSONL structured logging for pipeline scripts.

Each script run gets a console stream and its own JSONL file under logs/.
Entries carry the run id, level, logger name and message, plus an optional
event type and context dict so merges, QA checks and estimates can be parsed
back out of the logs.
"""

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from garden_city.paths import paths, ensure_dir


def generate_run_id() -> str:
    """
    Generate a run id of the form YYYYMMDD_HHMMSS_<8 hex chars>.
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


# =============================================================================
# JSONL Handler
# =============================================================================

class JSONLHandler(logging.Handler):
    """A logging handler that appends one JSON object per record."""

    def __init__(self, log_path: Path, run_id: str):
        super().__init__()
        self.log_path = log_path
        self.run_id = run_id
        self._file = None

    def _ensure_file(self):
        if self._file is None:
            ensure_dir(self.log_path.parent)
            self._file = open(self.log_path, "a", encoding="utf-8")

    def emit(self, record: logging.LogRecord):
        try:
            self._ensure_file()

            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "run_id": self.run_id,
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if hasattr(record, "event_type"):
                entry["event_type"] = record.event_type
            if hasattr(record, "context"):
                entry["context"] = record.context
            if record.exc_info:
                entry["exception"] = self.format(record)

            self._file.write(json.dumps(entry, default=str) + "\n")
            self._file.flush()

        except Exception:
            self.handleError(record)

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None
        super().close()


# =============================================================================
# Logger setup
# =============================================================================

_LOGGERS: dict[str, logging.Logger] = {}
_RUN_ID: str | None = None


def get_run_id() -> str:
    """Get the current run ID, generating one if needed."""
    global _RUN_ID
    if _RUN_ID is None:
        _RUN_ID = generate_run_id()
    return _RUN_ID


def set_run_id(run_id: str) -> None:
    """Pin the run ID (tests and resumed runs)."""
    global _RUN_ID
    _RUN_ID = run_id


def get_logger(
    script_name: str,
    run_id: str | None = None,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    log_dir: Path | None = None,
) -> logging.Logger:
    """
    Get or create a logger for a pipeline script.

    Args:
        script_name: Name of the script (e.g., "02_build_gcd_index").
        run_id: Optional run ID; if None, generates or reuses the current one.
        console_level: Logging level for console output.
        file_level: Logging level for the JSONL file.
        log_dir: Directory for the JSONL file (defaults to logs/).

    Returns:
        Configured Logger instance.
    """
    if run_id is None:
        run_id = get_run_id()
    else:
        set_run_id(run_id)

    logger_key = f"{script_name}_{run_id}"
    if logger_key in _LOGGERS:
        return _LOGGERS[logger_key]

    logger = logging.getLogger(logger_key)
    logger.setLevel(min(console_level, file_level))
    logger.handlers = []
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(console_handler)

    log_file = Path(log_dir or paths.logs) / f"{script_name}_{run_id}.jsonl"
    jsonl_handler = JSONLHandler(log_file, run_id)
    jsonl_handler.setLevel(file_level)
    logger.addHandler(jsonl_handler)

    _LOGGERS[logger_key] = logger

    logger.info(f"Logger initialized for {script_name}", extra={
        "event_type": "logger_init",
        "context": {"script_name": script_name, "run_id": run_id},
    })

    return logger


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    event_type: str,
    **context: Any
) -> None:
    """Log a structured event with a type and context."""
    logger.log(level, message, extra={
        "event_type": event_type,
        "context": context,
    })


def log_step_start(logger: logging.Logger, step_name: str, **context: Any) -> None:
    log_event(logger, logging.INFO, f"Starting: {step_name}", "step_start",
              step_name=step_name, **context)


def log_step_end(logger: logging.Logger, step_name: str, **context: Any) -> None:
    log_event(logger, logging.INFO, f"Completed: {step_name}", "step_end",
              step_name=step_name, **context)


def log_qa_check(
    logger: logging.Logger,
    check_name: str,
    passed: bool,
    details: str | None = None,
    **context: Any
) -> None:
    """Log a QA check result; failures are logged at ERROR."""
    status = "PASSED" if passed else "FAILED"
    message = f"QA Check [{check_name}]: {status}"
    if details:
        message += f" - {details}"

    log_event(logger, logging.INFO if passed else logging.ERROR, message, "qa_check",
              check_name=check_name, passed=passed, details=details, **context)


def log_merge(
    logger: logging.Logger,
    name: str,
    left_rows: int,
    matched_rows: int,
    result_rows: int,
    **context: Any
) -> None:
    """Log the outcome of a join: rows in, rows matched, rows out."""
    rate = matched_rows / left_rows if left_rows else 0.0
    log_event(logger, logging.INFO,
              f"Merged {name}: {matched_rows:,}/{left_rows:,} matched ({rate:.1%})",
              "merge", source=name, left_rows=left_rows, matched_rows=matched_rows,
              result_rows=result_rows, match_rate=rate, **context)


def log_estimate(
    logger: logging.Logger,
    estimator: str,
    outcome: str,
    treatment: str,
    specification: str,
    coefficient: float,
    std_error: float,
    n_obs: int,
) -> None:
    """Log a single regression coefficient of interest."""
    log_event(logger, logging.INFO,
              f"{estimator} {outcome} ~ {treatment} [{specification}]: "
              f"b={coefficient:.4f} (se={std_error:.4f}, n={n_obs:,})",
              "estimate", estimator=estimator, outcome=outcome, treatment=treatment,
              specification=specification, coefficient=coefficient,
              std_error=std_error, n_obs=n_obs)


def log_output_written(
    logger: logging.Logger,
    output_path: str | Path,
    row_count: int | None = None,
    **context: Any
) -> None:
    """Log that an output file was written."""
    message = f"Output written: {output_path}"
    if row_count is not None:
        message += f" ({row_count:,} rows)"

    log_event(logger, logging.INFO, message, "output_written",
              output_path=str(output_path), row_count=row_count, **context)
