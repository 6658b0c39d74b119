"""
Data Models Package

This package contains all Pydantic models used by tabkeeper.
All data leaving the storage layer, and every command entering the core,
must conform to these schemas.
"""

from tabkeeper.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from tabkeeper.models.commands import (
    BaseCommand,
    Command,
    CommandResult,
    parse_command,
)
from tabkeeper.models.dashboard import CategoryTotal, Dashboard, OutstandingBalance
from tabkeeper.models.ledger import (
    ActivityItem,
    BalanceDirection,
    Counterparty,
    CounterpartyDetails,
    CounterpartyHistory,
    CounterpartyRef,
    Due,
    DueSettlementResult,
    DueStatus,
    LedgerEntryResult,
    MonetaryEvent,
    ReconciliationResult,
    SettlementResult,
    format_money,
    to_money,
)
from tabkeeper.models.recurring import (
    MarkPaidResult,
    Occurrence,
    OccurrenceStatus,
    RecurrenceKind,
    RecurringRule,
    RuleCreationResult,
    ScheduledPayment,
    UndoPaidResult,
)

__all__ = [
    # Ledger models
    "ActivityItem",
    "BalanceDirection",
    "Counterparty",
    "CounterpartyDetails",
    "CounterpartyHistory",
    "CounterpartyRef",
    "Due",
    "DueSettlementResult",
    "DueStatus",
    "LedgerEntryResult",
    "MonetaryEvent",
    "ReconciliationResult",
    "SettlementResult",
    "format_money",
    "to_money",
    # Recurring models
    "MarkPaidResult",
    "Occurrence",
    "OccurrenceStatus",
    "RecurrenceKind",
    "RecurringRule",
    "RuleCreationResult",
    "ScheduledPayment",
    "UndoPaidResult",
    # Dashboard models
    "CategoryTotal",
    "Dashboard",
    "OutstandingBalance",
    # Commands
    "BaseCommand",
    "Command",
    "CommandResult",
    "parse_command",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
