import logging
import os
import structlog
import sys
from pathlib import Path
from dotenv import load_dotenv

def _renderers(fmt: str) -> list:
    if fmt == "console":
        return [structlog.dev.ConsoleRenderer(colors=False)]
    # Snapshot payloads are Cyrillic; keep them readable in the JSON lines.
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(ensure_ascii=False)]

def setup_logging(level: str | None = None):
    """Route structlog events through stdlib handlers on stderr.

    stdout stays free for answers printed by scripts. LOG_FORMAT=console switches
    to human-readable lines; LOG_ERROR_FILE additionally collects errors.
    """
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(dotenv_path=env_path)
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    error_log_path = os.getenv("LOG_ERROR_FILE", "").strip()
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)

    formatter = logging.Formatter("%(message)s")
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if error_log_path:
        Path(error_log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(error_log_path, encoding="utf-8")
        file_handler.setLevel(logging.ERROR)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *_renderers(log_format),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
