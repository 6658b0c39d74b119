"""
Main Orchestrator for tabkeeper

This module ties the components together and defines the one entry point
the chat layer uses: an intent payload goes in, a CommandResult comes out.

    payload -> parse_command -> CommandDispatcher.dispatch -> CommandResult

DESIGN DECISION: The orchestrator enforces the boundaries:
- Nothing touches storage until the payload validates as a command
- Domain errors become structured failures, never crashes
- A transient storage failure is retried (the failed transaction was
  rolled back, so re-running it is safe); if it persists it is reported
  as retryable
- Every write is audited after it commits
"""

from datetime import date
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tabkeeper.audit import AuditLogger, configure_logging, create_correlation_id
from tabkeeper.config import Settings, get_settings
from tabkeeper.config.settings import LedgerSettings
from tabkeeper.errors import CounterpartyNotFound, LedgerError, UnparseableIntentError
from tabkeeper.ledger import BalanceLedger, CounterpartyDirectory, SettlementProcessor
from tabkeeper.models import commands as cmd
from tabkeeper.models.audit import AuditEvent, AuditEventBuilder
from tabkeeper.models.commands import BaseCommand, CommandResult, parse_command
from tabkeeper.models.ledger import format_money
from tabkeeper.queries import DashboardAggregator
from tabkeeper.recurring import OccurrenceTracker, RecurringScheduler, describe_recurrence
from tabkeeper.services.storage import (
    Database,
    SQLAuditStorage,
    StorageError,
    StorageTransactionError,
)


logger = structlog.get_logger(__name__)

HandlerResult = tuple[Any, str, list[AuditEvent]]


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "command_retrying",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


class CommandDispatcher:
    """
    Executes validated commands against the ledger and the recurring engine.

    Each handler returns (data, message, audit_events). Audit events are
    written only after the handler's transaction committed.
    """

    def __init__(
        self,
        directory: CounterpartyDirectory,
        ledger: BalanceLedger,
        settlements: SettlementProcessor,
        scheduler: RecurringScheduler,
        tracker: OccurrenceTracker,
        dashboard: DashboardAggregator,
        audit_logger: Optional[AuditLogger] = None,
        ledger_settings: Optional[LedgerSettings] = None,
        retry_attempts: int = 2,
        clock: Callable[[], date] = date.today,
    ):
        self._directory = directory
        self._ledger = ledger
        self._settlements = settlements
        self._scheduler = scheduler
        self._tracker = tracker
        self._dashboard = dashboard
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = ledger_settings or LedgerSettings()
        self._clock = clock
        self._retrying = Retrying(
            retry=retry_if_exception_type(StorageTransactionError),
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            before_sleep=_log_retry,
            reraise=True,
        )

        self._handlers: dict[str, Callable[[Any, UUID], HandlerResult]] = {
            "get_or_create_counterparty": self._get_or_create_counterparty,
            "get_counterparty": self._get_counterparty,
            "list_counterparties": self._list_counterparties,
            "get_counterparty_history": self._get_counterparty_history,
            "record_expense_paid_by_counterparty": self._record_expense,
            "record_lending": self._record_lending,
            "record_personal_expense": self._record_personal_expense,
            "receive_payment": self._receive_payment,
            "settle_dues": self._settle_dues,
            "settle_due": self._settle_due,
            "list_pending_dues": self._list_pending_dues,
            "reconcile_balance": self._reconcile_balance,
            "create_recurring_rule": self._create_recurring_rule,
            "list_rules": self._list_rules,
            "deactivate_rule": self._deactivate_rule,
            "update_rule_amount": self._update_rule_amount,
            "mark_occurrence_paid": self._mark_occurrence_paid,
            "undo_occurrence_paid": self._undo_occurrence_paid,
            "skip_occurrence": self._skip_occurrence,
            "list_pending_occurrences": self._list_pending_occurrences,
            "mark_overdue": self._mark_overdue,
            "get_dashboard": self._get_dashboard,
        }

    def _money(self, amount) -> str:
        return format_money(amount, self._settings.currency_symbol)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def dispatch_payload(
        self,
        payload: Union[dict, str, bytes],
        correlation_id: Optional[UUID] = None,
    ) -> CommandResult:
        """Validate a raw extractor payload and dispatch it."""
        correlation_id = correlation_id or create_correlation_id()
        try:
            command = parse_command(payload)
        except UnparseableIntentError as e:
            user_id = payload.get("user_id") if isinstance(payload, dict) else None
            kind = payload.get("kind") if isinstance(payload, dict) else None
            self._audit_logger.log_command_rejected(
                user_id=user_id if isinstance(user_id, str) else None,
                command_kind=str(kind or "unknown"),
                error_code=e.code,
                error_message=e.message,
                correlation_id=correlation_id,
            )
            return CommandResult.failure(
                kind=str(kind or "unknown"),
                error_code=e.code,
                message=e.message,
                data={"errors": e.errors},
                correlation_id=correlation_id,
            )
        return self.dispatch(command, correlation_id=correlation_id)

    def dispatch(
        self,
        command: BaseCommand,
        correlation_id: Optional[UUID] = None,
    ) -> CommandResult:
        """
        Execute one command.

        Never raises for domain or storage errors; those come back as
        `success=False` results.
        """
        correlation_id = correlation_id or create_correlation_id()
        kind = command.kind
        handler = self._handlers[kind]
        log = logger.bind(kind=kind, user_id=command.user_id, correlation_id=str(correlation_id))

        try:
            data, message, events = self._retrying.copy()(handler, command, correlation_id)
        except LedgerError as e:
            log.info("command_rejected", error_code=e.code)
            self._audit_logger.log_command_rejected(
                user_id=command.user_id,
                command_kind=kind,
                error_code=e.code,
                error_message=e.message,
                correlation_id=correlation_id,
            )
            extra = {"known_names": e.known_names} if isinstance(e, CounterpartyNotFound) else None
            return CommandResult.failure(
                kind=kind,
                error_code=e.code,
                message=e.message,
                data=extra,
                correlation_id=correlation_id,
            )
        except StorageError as e:
            log.error("command_storage_failure", error=str(e), retryable=e.retryable)
            self._audit_logger.log_storage_error(
                user_id=command.user_id,
                command_kind=kind,
                error_message=str(e),
                retryable=e.retryable,
                correlation_id=correlation_id,
            )
            return CommandResult.failure(
                kind=kind,
                error_code="storage_transaction_error" if e.retryable else "storage_error",
                message="Could not save that right now. Please try again."
                if e.retryable
                else "Could not complete that because of a storage error.",
                retryable=e.retryable,
                correlation_id=correlation_id,
            )

        for event in events:
            self._audit_logger.log(event)
        log.info("command_completed")
        return CommandResult.ok(kind, data, message=message, correlation_id=correlation_id)

    # =========================================================================
    # COUNTERPARTIES
    # =========================================================================

    def _get_or_create_counterparty(
        self, command: cmd.GetOrCreateCounterpartyCommand, cid: UUID
    ) -> HandlerResult:
        ref = self._directory.get_or_create(command.user_id, command.name)
        events = []
        if ref.was_created:
            events.append(AuditEventBuilder.counterparty_created(
                command.user_id, ref.counterparty.id, ref.counterparty.name, correlation_id=cid
            ))
            message = f"Added {ref.counterparty.name} to your contacts."
        else:
            message = ref.counterparty.describe_balance(self._settings.currency_symbol) + "."
        return ref, message, events

    def _get_counterparty(self, command: cmd.GetCounterpartyCommand, cid: UUID) -> HandlerResult:
        details = self._directory.details(command.user_id, command.name)
        message = (
            f"{details.counterparty.describe_balance(self._settings.currency_symbol)} "
            f"({details.pending_dues} pending)."
        )
        return details, message, []

    def _list_counterparties(self, command: cmd.ListCounterpartiesCommand, cid: UUID) -> HandlerResult:
        counterparties = self._directory.list_counterparties(
            command.user_id, with_balance_only=command.with_balance_only
        )
        return counterparties, f"{len(counterparties)} contact(s).", []

    def _get_counterparty_history(
        self, command: cmd.GetCounterpartyHistoryCommand, cid: UUID
    ) -> HandlerResult:
        history = self._directory.history(command.user_id, command.name)
        return history, f"{len(history.activities)} activity item(s) with {history.counterparty.name}.", []

    # =========================================================================
    # LEDGER
    # =========================================================================

    def _entry_events(self, result, builder, user_id: str, cid: UUID) -> list[AuditEvent]:
        events = []
        if result.was_created:
            events.append(AuditEventBuilder.counterparty_created(
                user_id, result.counterparty.id, result.counterparty.name, correlation_id=cid
            ))
        events.append(builder(
            user_id,
            result.due.id,
            result.counterparty.name,
            result.transaction.amount,
            result.new_balance,
            correlation_id=cid,
        ))
        return events

    def _record_expense(
        self, command: cmd.RecordExpensePaidByCounterpartyCommand, cid: UUID
    ) -> HandlerResult:
        result = self._settlements.record_expense_paid_by_counterparty(
            command.user_id,
            command.counterparty_name,
            command.amount,
            category=command.category,
            description=command.description,
            merchant=command.merchant,
            event_date=command.event_date or self._clock(),
        )
        message = (
            f"Recorded: {result.counterparty.name} paid {self._money(result.transaction.amount)}. "
            f"{result.counterparty.describe_balance(self._settings.currency_symbol)}."
        )
        events = self._entry_events(result, AuditEventBuilder.expense_recorded, command.user_id, cid)
        return result, message, events

    def _record_lending(self, command: cmd.RecordLendingCommand, cid: UUID) -> HandlerResult:
        result = self._settlements.record_lending(
            command.user_id,
            command.counterparty_name,
            command.amount,
            category=command.category,
            description=command.description,
            merchant=command.merchant,
            event_date=command.event_date or self._clock(),
        )
        message = (
            f"Recorded: you lent {self._money(result.transaction.amount)} to {result.counterparty.name}. "
            f"{result.counterparty.describe_balance(self._settings.currency_symbol)}."
        )
        events = self._entry_events(result, AuditEventBuilder.lending_recorded, command.user_id, cid)
        return result, message, events

    def _record_personal_expense(
        self, command: cmd.RecordPersonalExpenseCommand, cid: UUID
    ) -> HandlerResult:
        event = self._settlements.record_personal_expense(
            command.user_id,
            command.amount,
            category=command.category,
            description=command.description,
            merchant=command.merchant,
            event_date=command.event_date or self._clock(),
        )
        audit = AuditEventBuilder.personal_expense_recorded(
            command.user_id, event.id, event.category, event.amount, correlation_id=cid
        )
        return event, f"Logged {self._money(event.amount)} on {event.category}.", [audit]

    def _receive_payment(self, command: cmd.ReceivePaymentCommand, cid: UUID) -> HandlerResult:
        result = self._settlements.receive_payment(
            command.user_id, command.counterparty_name, command.amount
        )
        message = (
            f"Received {self._money(result.settled_amount)} from {result.counterparty.name}. "
            f"{result.counterparty.describe_balance(self._settings.currency_symbol)}."
        )
        audit = AuditEventBuilder.payment_received(
            command.user_id,
            result.counterparty.id,
            result.counterparty.name,
            result.settled_amount,
            result.new_balance,
            correlation_id=cid,
        )
        return result, message, [audit]

    def _settle_dues(self, command: cmd.SettleDuesCommand, cid: UUID) -> HandlerResult:
        result = self._settlements.settle_with_counterparty(
            command.user_id, command.counterparty_name, command.amount
        )
        message = (
            f"Paid {result.counterparty.name} {self._money(result.settled_amount)}. "
            f"{result.counterparty.describe_balance(self._settings.currency_symbol)}."
        )
        audit = AuditEventBuilder.dues_settled(
            command.user_id,
            result.counterparty.id,
            result.counterparty.name,
            result.settled_amount,
            result.new_balance,
            [d.id for d in result.touched_dues],
            correlation_id=cid,
        )
        return result, message, [audit]

    def _settle_due(self, command: cmd.SettleDueCommand, cid: UUID) -> HandlerResult:
        result = self._settlements.settle_due(command.user_id, command.due_id, command.partial_amount)
        if result.due.is_pending:
            message = f"Due {result.due.id} reduced by {self._money(result.reduction)}; {self._money(result.due.amount)} left."
        else:
            message = f"Due {result.due.id} settled."
        audit = AuditEventBuilder.due_settled(
            command.user_id, result.due.id, result.reduction, result.due.amount, correlation_id=cid
        )
        return result, message, [audit]

    def _list_pending_dues(self, command: cmd.ListPendingDuesCommand, cid: UUID) -> HandlerResult:
        counterparty_id = None
        if command.counterparty_name:
            counterparty_id = self._directory.find(command.user_id, command.counterparty_name).id
        dues = self._settlements.get_pending_dues(command.user_id, counterparty_id)
        return dues, f"{len(dues)} pending due(s).", []

    def _reconcile_balance(self, command: cmd.ReconcileBalanceCommand, cid: UUID) -> HandlerResult:
        counterparty = self._directory.find(command.user_id, command.counterparty_name)
        result = self._ledger.reconcile(command.user_id, counterparty.id, correct=command.correct)
        events = []
        if result.corrected:
            events.append(AuditEventBuilder.balance_reconciled(
                command.user_id, counterparty.id, result.cached_balance, result.derived_balance
            ))
        if result.consistent:
            message = f"Balance with {counterparty.name} is consistent."
        elif result.corrected:
            message = f"Balance with {counterparty.name} corrected by {self._money(result.drift)}."
        else:
            message = f"Balance with {counterparty.name} is off by {self._money(result.drift)}."
        return result, message, events

    # =========================================================================
    # RECURRING
    # =========================================================================

    def _create_recurring_rule(
        self, command: cmd.CreateRecurringRuleCommand, cid: UUID
    ) -> HandlerResult:
        result = self._scheduler.create_rule(
            command.user_id,
            command.name,
            command.amount,
            command.recurrence_kind,
            recurrence_day=command.recurrence_day,
            category=command.category,
            today=self._clock(),
        )
        rule = result.rule
        cadence = describe_recurrence(rule.recurrence_kind, rule.recurrence_day)
        message = (
            f"Reminder set: {rule.name} {self._money(rule.amount)} {cadence}, "
            f"next due {rule.next_due_date.isoformat()}."
        )
        audit = AuditEventBuilder.rule_created(
            command.user_id,
            rule.id,
            rule.name,
            rule.amount,
            rule.recurrence_kind.value,
            rule.next_due_date.isoformat(),
            correlation_id=cid,
        )
        return result, message, [audit]

    def _list_rules(self, command: cmd.ListRulesCommand, cid: UUID) -> HandlerResult:
        rules = self._scheduler.list_rules(command.user_id, active_only=command.active_only)
        return rules, f"{len(rules)} reminder(s).", []

    def _deactivate_rule(self, command: cmd.DeactivateRuleCommand, cid: UUID) -> HandlerResult:
        rule = self._scheduler.deactivate_rule(command.user_id, command.rule_id)
        audit = AuditEventBuilder.rule_deactivated(command.user_id, rule.id, rule.name, correlation_id=cid)
        return rule, f"Stopped reminder {rule.name}.", [audit]

    def _update_rule_amount(self, command: cmd.UpdateRuleAmountCommand, cid: UUID) -> HandlerResult:
        rule, previous = self._scheduler.update_rule_amount(command.user_id, command.rule_id, command.amount)
        audit = AuditEventBuilder.rule_amount_updated(
            command.user_id, rule.id, previous, rule.amount, correlation_id=cid
        )
        return rule, f"{rule.name} is now {self._money(rule.amount)}.", [audit]

    def _mark_occurrence_paid(
        self, command: cmd.MarkOccurrencePaidCommand, cid: UUID
    ) -> HandlerResult:
        result = self._tracker.mark_paid(
            command.user_id,
            command.occurrence_id,
            generate_next=command.generate_next,
            today=self._clock(),
        )
        message = f"Marked {result.rule.name} as paid."
        if result.next_occurrence:
            message += f" Next due {result.next_occurrence.due_date.isoformat()}."
        audit = AuditEventBuilder.occurrence_paid(
            command.user_id,
            result.occurrence.id,
            result.rule.name,
            result.next_occurrence.id if result.next_occurrence else None,
            correlation_id=cid,
        )
        return result, message, [audit]

    def _undo_occurrence_paid(
        self, command: cmd.UndoOccurrencePaidCommand, cid: UUID
    ) -> HandlerResult:
        result = self._tracker.undo_paid(command.user_id, command.occurrence_id)
        audit = AuditEventBuilder.occurrence_paid_undone(
            command.user_id, result.occurrence.id, result.deleted_occurrence_ids, correlation_id=cid
        )
        return result, f"{result.rule.name} is unpaid again.", [audit]

    def _skip_occurrence(self, command: cmd.SkipOccurrenceCommand, cid: UUID) -> HandlerResult:
        result = self._tracker.skip(
            command.user_id, command.occurrence_id, generate_next=command.generate_next
        )
        audit = AuditEventBuilder.occurrence_skipped(
            command.user_id,
            result.occurrence.id,
            result.next_occurrence.id if result.next_occurrence else None,
            correlation_id=cid,
        )
        return result, f"Skipped {result.rule.name}.", [audit]

    def _list_pending_occurrences(
        self, command: cmd.ListPendingOccurrencesCommand, cid: UUID
    ) -> HandlerResult:
        payments = self._tracker.list_outstanding(command.user_id, rule_id=command.rule_id)
        return payments, f"{len(payments)} payment(s) outstanding.", []

    def _mark_overdue(self, command: cmd.MarkOverdueCommand, cid: UUID) -> HandlerResult:
        overdue = self._tracker.mark_overdue(command.user_id, today=self._clock())
        events = []
        if overdue:
            events.append(AuditEventBuilder.occurrences_overdue(command.user_id, [o.id for o in overdue]))
        return overdue, f"{len(overdue)} payment(s) now overdue.", events

    def _get_dashboard(self, command: cmd.GetDashboardCommand, cid: UUID) -> HandlerResult:
        dashboard = self._dashboard.build(command.user_id, today=self._clock())
        message = (
            f"Spent {self._money(dashboard.total_spent_this_month)} this month; "
            f"you owe {self._money(dashboard.total_you_owe)}, "
            f"owed to you {self._money(dashboard.total_owed_to_you)}."
        )
        return dashboard, message, []


def create_app_components(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    clock: Callable[[], date] = date.today,
) -> tuple[CommandDispatcher, Database]:
    """
    Factory function to create all application components.

    Args:
        settings: Settings to use (defaults to get_settings()).
        database: An existing Database; built from settings when omitted.
        clock: Source of "today" for date-dependent commands.

    Returns:
        (dispatcher, database)
    """
    settings = settings or get_settings()
    app_settings = settings.app
    ledger_settings = settings.ledger

    configure_logging(app_settings.log_level, json_logs=app_settings.log_json)

    db = database or Database.from_settings(settings.database)
    db.create_all()

    audit_logger = AuditLogger(SQLAuditStorage(db))
    ledger = BalanceLedger(db)
    directory = CounterpartyDirectory(db)

    dispatcher = CommandDispatcher(
        directory=directory,
        ledger=ledger,
        settlements=SettlementProcessor(db, ledger, directory, ledger_settings),
        scheduler=RecurringScheduler(db, ledger_settings),
        tracker=OccurrenceTracker(db),
        dashboard=DashboardAggregator(db, ledger_settings),
        audit_logger=audit_logger,
        ledger_settings=ledger_settings,
        retry_attempts=app_settings.storage_retry_attempts,
        clock=clock,
    )
    logger.info("app_components_created", environment=app_settings.app_environment)
    return dispatcher, db
