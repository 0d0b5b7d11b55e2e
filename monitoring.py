"""
monitoring.py — Logging setup and summary helpers for the Opportunity Scout pipeline.
"""

import logging
import sys

from config import LOG_DIR, LOG_FILE


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Set up structured logging to both file and stdout.
    Returns the root logger for the application.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("opportunity_scout")
    logger.setLevel(level)

    # Prevent duplicate handlers on re-init
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = logging.FileHandler(str(LOG_FILE), mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific module."""
    return logging.getLogger(f"opportunity_scout.{name}")


def log_source_success(logger: logging.Logger, source_name: str, inserted: int, retries: int = 0):
    """Log a source that reached 'completed'."""
    suffix = f" after {retries} retries" if retries else ""
    logger.info(f"[{source_name}] Completed: {inserted} opportunities inserted{suffix}")


def log_source_failure(logger: logging.Logger, source_name: str, error: Exception):
    """Log a source that reached 'failed'."""
    logger.error(f"[{source_name}] Source failed: {type(error).__name__}: {str(error)}")


def log_transition(logger: logging.Logger, session_id: str, source_url: str, old: str, new: str):
    """Log a progress status transition."""
    logger.debug(f"[{session_id}] {source_url}: {old or '-'} → {new}")


def log_session_summary(logger: logging.Logger, session_id: str, summary, duration: float):
    """Log a complete session summary."""
    logger.info("=" * 60)
    logger.info(f"SESSION SUMMARY — {session_id}")
    logger.info(f"  Sources succeeded:   {summary.sources_succeeded}")
    logger.info(f"  Sources failed:      {summary.sources_failed}")
    logger.info(f"  Opportunities added: {summary.total_opportunities_inserted}")
    logger.info(f"  Candidates rejected: {summary.candidates_rejected}")
    logger.info(f"  Write errors:        {summary.write_errors}")
    logger.info(f"  Duration:            {duration:.1f}s")

    if summary.errors:
        logger.warning("ERRORS:")
        for err in summary.errors:
            logger.warning(f"  - {err}")

    logger.info("=" * 60)
