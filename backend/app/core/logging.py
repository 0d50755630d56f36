"""Logging configuration for the application

Two named loggers carry audit lines: ``billing`` (plan changes, renewals,
downgrades) and ``security`` (rejected webhooks, rate limits). They stay at
INFO even when LOG_LEVEL is raised so the audit trail is never lost.
"""
import logging

from app.core.config import settings

AUDIT_LOGGERS = ("billing", "security")

# Chatty third-party loggers capped at WARNING
QUIET_LOGGERS = ("stripe", "urllib3", "urllib3.connectionpool", "resend", "uvicorn.access")


def setup_logging():
    """Configure root logging from settings.LOG_LEVEL"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=f'%(asctime)s - {settings.OTEL_SERVICE_NAME} - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    for name in AUDIT_LOGGERS:
        logging.getLogger(name).setLevel(min(level, logging.INFO))
