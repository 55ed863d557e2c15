import json, logging, sys, time
from pathlib import Path
from typing import Optional

# Between INFO and DEBUG: per-connection events that are too chatty for INFO.
VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")

_RESERVED = frozenset((
    "msg", "args", "exc_info", "exc_text", "stack_info", "created", "msecs", "relativeCreated",
    "levelno", "levelname", "pathname", "filename", "module", "lineno", "funcName", "thread",
    "threadName", "processName", "process", "taskName", "name",
))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Allow extra fields via record.__dict__ (filtered)
        for k, v in record.__dict__.items():
            if k in _RESERVED:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        return json.dumps(payload)


def get_logger(name: str = "udp_redirect") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger


def level_from_flags(verbose: int = 0, debug: bool = False, quiet: bool = False) -> int:
    """Map command line verbosity flags to a logging level."""
    if debug or verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return VERBOSE
    if quiet:
        return logging.WARNING
    return logging.INFO


def configure_file_logger(
    role: str,
    logger: Optional[logging.Logger] = None,
    logs_dir: Optional[Path] = None,
) -> Path:
    """Attach a JSON file handler and return log path."""

    active_logger = logger or get_logger()

    # Drop any previous file handlers we attached to avoid duplicate writes during tests.
    for handler in list(active_logger.handlers):
        if getattr(handler, "_redirect_file_handler", False):
            active_logger.removeHandler(handler)
            handler.close()

    logs_dir = Path(logs_dir) if logs_dir is not None else Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y%m%d-%H%M%S", time.gmtime())
    path = logs_dir / f"{role}-{timestamp}.log"

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(JsonFormatter())
    file_handler._redirect_file_handler = True  # type: ignore[attr-defined]
    active_logger.addHandler(file_handler)

    return path
