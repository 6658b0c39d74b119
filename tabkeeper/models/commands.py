"""
Command Models

DESIGN DECISION: Whatever turns a chat message into an intent (a language
model, a form, a test) must hand over one of the commands below. Each
command is a closed, validated shape discriminated by `kind`; a payload
that does not fit is rejected with UnparseableIntentError before any
storage is touched.

The intent extractor never writes to the ledger directly. It can only
propose a command; the dispatcher validates and executes it.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from tabkeeper.errors import UnparseableIntentError
from tabkeeper.models.recurring import RecurrenceKind


class BaseCommand(BaseModel):
    """Fields shared by every command."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1, description="Owner of the data")


# =============================================================================
# COUNTERPARTIES
# =============================================================================

class GetOrCreateCounterpartyCommand(BaseCommand):
    kind: Literal["get_or_create_counterparty"] = "get_or_create_counterparty"
    name: str = Field(..., min_length=1, max_length=200)


class GetCounterpartyCommand(BaseCommand):
    kind: Literal["get_counterparty"] = "get_counterparty"
    name: str = Field(..., min_length=1, max_length=200)


class ListCounterpartiesCommand(BaseCommand):
    kind: Literal["list_counterparties"] = "list_counterparties"
    with_balance_only: bool = False


class GetCounterpartyHistoryCommand(BaseCommand):
    kind: Literal["get_counterparty_history"] = "get_counterparty_history"
    name: str = Field(..., min_length=1, max_length=200)


# =============================================================================
# LEDGER WRITES
# =============================================================================

class RecordExpensePaidByCounterpartyCommand(BaseCommand):
    """Someone else paid for the user ("Mike paid 40 for my lunch")."""

    kind: Literal["record_expense_paid_by_counterparty"] = "record_expense_paid_by_counterparty"
    counterparty_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0)
    category: str = Field(default="other", min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=200)
    event_date: Optional[date] = None


class RecordLendingCommand(BaseCommand):
    """The user lent money to, or paid for, someone ("lent Sara 30")."""

    kind: Literal["record_lending"] = "record_lending"
    counterparty_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0)
    category: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=200)
    event_date: Optional[date] = None


class RecordPersonalExpenseCommand(BaseCommand):
    kind: Literal["record_personal_expense"] = "record_personal_expense"
    amount: Decimal = Field(..., gt=0)
    category: str = Field(default="other", min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=200)
    event_date: Optional[date] = None


class ReceivePaymentCommand(BaseCommand):
    """The counterparty paid the user back. No amount means everything."""

    kind: Literal["receive_payment"] = "receive_payment"
    counterparty_name: str = Field(..., min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(default=None, gt=0)


class SettleDuesCommand(BaseCommand):
    """The user paid the counterparty back. No amount means everything."""

    kind: Literal["settle_dues"] = "settle_dues"
    counterparty_name: str = Field(..., min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(default=None, gt=0)


class SettleDueCommand(BaseCommand):
    kind: Literal["settle_due"] = "settle_due"
    due_id: int = Field(..., gt=0)
    partial_amount: Optional[Decimal] = Field(default=None, gt=0)


class ListPendingDuesCommand(BaseCommand):
    kind: Literal["list_pending_dues"] = "list_pending_dues"
    counterparty_name: Optional[str] = Field(default=None, min_length=1, max_length=200)


class ReconcileBalanceCommand(BaseCommand):
    kind: Literal["reconcile_balance"] = "reconcile_balance"
    counterparty_name: str = Field(..., min_length=1, max_length=200)
    correct: bool = True


# =============================================================================
# RECURRING RULES AND OCCURRENCES
# =============================================================================

class CreateRecurringRuleCommand(BaseCommand):
    """
    A new recurring bill.

    `recurrence_day`: weekday index for weekly rules (0=Sunday .. 6=Saturday),
    day of month for monthly rules. Ignored otherwise.
    """

    kind: Literal["create_recurring_rule"] = "create_recurring_rule"
    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    recurrence_kind: RecurrenceKind
    recurrence_day: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=64)


class ListRulesCommand(BaseCommand):
    kind: Literal["list_rules"] = "list_rules"
    active_only: bool = True


class DeactivateRuleCommand(BaseCommand):
    kind: Literal["deactivate_rule"] = "deactivate_rule"
    rule_id: int = Field(..., gt=0)


class UpdateRuleAmountCommand(BaseCommand):
    kind: Literal["update_rule_amount"] = "update_rule_amount"
    rule_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., ge=0)


class MarkOccurrencePaidCommand(BaseCommand):
    kind: Literal["mark_occurrence_paid"] = "mark_occurrence_paid"
    occurrence_id: int = Field(..., gt=0)
    generate_next: bool = False


class UndoOccurrencePaidCommand(BaseCommand):
    kind: Literal["undo_occurrence_paid"] = "undo_occurrence_paid"
    occurrence_id: int = Field(..., gt=0)


class SkipOccurrenceCommand(BaseCommand):
    kind: Literal["skip_occurrence"] = "skip_occurrence"
    occurrence_id: int = Field(..., gt=0)
    generate_next: bool = True


class ListPendingOccurrencesCommand(BaseCommand):
    kind: Literal["list_pending_occurrences"] = "list_pending_occurrences"
    rule_id: Optional[int] = Field(default=None, gt=0)


class MarkOverdueCommand(BaseCommand):
    kind: Literal["mark_overdue"] = "mark_overdue"


class GetDashboardCommand(BaseCommand):
    kind: Literal["get_dashboard"] = "get_dashboard"


Command = Annotated[
    Union[
        GetOrCreateCounterpartyCommand,
        GetCounterpartyCommand,
        ListCounterpartiesCommand,
        GetCounterpartyHistoryCommand,
        RecordExpensePaidByCounterpartyCommand,
        RecordLendingCommand,
        RecordPersonalExpenseCommand,
        ReceivePaymentCommand,
        SettleDuesCommand,
        SettleDueCommand,
        ListPendingDuesCommand,
        ReconcileBalanceCommand,
        CreateRecurringRuleCommand,
        ListRulesCommand,
        DeactivateRuleCommand,
        UpdateRuleAmountCommand,
        MarkOccurrencePaidCommand,
        UndoOccurrencePaidCommand,
        SkipOccurrenceCommand,
        ListPendingOccurrencesCommand,
        MarkOverdueCommand,
        GetDashboardCommand,
    ],
    Field(discriminator="kind"),
]

_command_adapter = TypeAdapter(Command)


def parse_command(payload: Union[dict, str, bytes]) -> BaseCommand:
    """
    Validate an extractor payload (dict or JSON text) into a command.

    Raises:
        UnparseableIntentError: the payload matches no command shape
    """
    try:
        if isinstance(payload, (str, bytes)):
            return _command_adapter.validate_json(payload)
        return _command_adapter.validate_python(payload)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in errors})
        raise UnparseableIntentError(
            f"Could not understand the request ({', '.join(fields) or 'payload'}).",
            errors=errors,
        ) from e


class CommandResult(BaseModel):
    """
    Outcome of one dispatched command.

    Domain errors come back as `success=False` with a code and a
    human-readable message; they are not exceptions for the caller.
    """

    success: bool
    kind: str
    data: Any = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    correlation_id: Optional[UUID] = None

    @classmethod
    def ok(cls, kind: str, data: Any, message: Optional[str] = None, correlation_id: Optional[UUID] = None) -> "CommandResult":
        return cls(success=True, kind=kind, data=data, message=message, correlation_id=correlation_id)

    @classmethod
    def failure(
        cls,
        kind: str,
        error_code: str,
        message: str,
        retryable: bool = False,
        data: Any = None,
        correlation_id: Optional[UUID] = None,
    ) -> "CommandResult":
        return cls(
            success=False,
            kind=kind,
            data=data,
            error_code=error_code,
            message=message,
            retryable=retryable,
            correlation_id=correlation_id,
        )
