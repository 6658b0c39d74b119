"""
Audit Logger

DESIGN DECISION: Every ledger and reminder change is logged twice:
1. Structured local log (structlog, for debugging)
2. The audit_events table (for persistence and user visibility)

The audit logger:
- Gracefully handles failures (a failed audit write never fails a command
  that already committed)
- Supports correlation IDs to trace the events of one command
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from tabkeeper.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from tabkeeper.services.storage.interface import AuditStorageInterface


_SHARED_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog on top of the standard library logger.

    Called once at import with the defaults, and again by
    `create_app_components` with the configured level and renderer.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("tabkeeper.audit")

    def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    def log_command_rejected(
        self,
        user_id: Optional[str],
        command_kind: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a command that ended in a domain error."""
        self.log(AuditEventBuilder.command_rejected(
            user_id=user_id,
            command_kind=command_kind,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    def log_storage_error(
        self,
        user_id: Optional[str],
        command_kind: str,
        error_message: str,
        retryable: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a command that failed in the storage layer."""
        self.log(AuditEventBuilder.storage_error(
            user_id=user_id,
            command_kind=command_kind,
            error_message=error_message,
            retryable=retryable,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new command and pass it through every
    event the command produces.
    """
    return uuid4()
