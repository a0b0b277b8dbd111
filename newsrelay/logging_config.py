"""Logging configuration for newsrelay."""
import logging
import logging.handlers
from datetime import datetime, timedelta
from pathlib import Path

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("apscheduler", "urllib3", "httpx", "openai")


def setup_logging(log_dir: Path, retention_days: int = 30, verbose: bool = False) -> logging.Logger:
    """Configure file + console logging for the long-running service.

    Args:
        log_dir: Directory for log files (created if missing)
        retention_days: How many days of rotated logs to keep
        verbose: If True, console logs at DEBUG
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    cleanup_old_logs(log_dir, retention_days)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    # Worker threads log concurrently, so the thread name goes in the file format
    file_handler = logging.handlers.TimedRotatingFileHandler(
        filename=log_dir / "newsrelay.log",
        when="midnight",
        backupCount=retention_days,
        encoding="utf-8",
    )
    file_handler.namer = _dated_name
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s.%(msecs)03d [%(levelname)s] %(threadName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", datefmt="%H:%M:%S"))
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def _dated_name(default_name: str) -> str:
    # newsrelay.log.2026-01-31 -> 2026-01-31.log
    path = Path(default_name)
    return str(path.parent / f"{path.suffix.lstrip('.')}.log")


def cleanup_old_logs(log_dir: Path, retention_days: int) -> int:
    """Delete rotated YYYY-MM-DD.log files older than retention_days. Returns count deleted."""
    if not log_dir.exists():
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted = 0
    for log_file in log_dir.glob("*.log"):
        try:
            file_date = datetime.strptime(log_file.stem, "%Y-%m-%d")
        except ValueError:
            continue
        if file_date < cutoff_date:
            try:
                log_file.unlink()
            except OSError:
                continue
            deleted += 1
            logging.debug(f"Deleted old log file: {log_file.name}")
    return deleted
