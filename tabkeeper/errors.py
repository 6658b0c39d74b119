"""
Domain Errors

These are expected, user-facing outcomes ("Mike doesn't owe you anything"),
not crashes. The command dispatcher turns each of them into a structured
failure carrying `code` and a human-readable message. Whenever one of them
is raised inside a storage transaction, the transaction is rolled back, so
no partial state change survives.

Storage failures live in `tabkeeper.services.storage.interface`.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all domain errors."""

    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CounterpartyNotFound(LedgerError):
    """No counterparty with that name (or id) exists for this user."""

    code = "counterparty_not_found"

    def __init__(self, name: str, known_names: Optional[list[str]] = None):
        super().__init__(f"No record of {name}. Check the name.")
        self.name = name
        self.known_names = known_names or []


class NothingOwedError(LedgerError):
    """Settlement attempted in a direction where nothing is owed."""

    code = "nothing_owed"


class NoPendingDuesError(LedgerError):
    """Settlement requested but there is nothing pending to settle."""

    code = "no_pending_dues"


class NotPaidError(LedgerError):
    """Undo requested on an occurrence that is not currently paid."""

    code = "not_paid"


class InvalidRecurrenceError(LedgerError):
    """Weekday or day-of-month out of range for the recurrence kind."""

    code = "invalid_recurrence"


class InvalidAmountError(LedgerError):
    """Amount is not positive or exceeds the configured ceiling."""

    code = "invalid_amount"


class DueNotFound(LedgerError):
    code = "due_not_found"


class RuleNotFound(LedgerError):
    code = "rule_not_found"


class OccurrenceNotFound(LedgerError):
    code = "occurrence_not_found"


class OccurrenceNotPayableError(LedgerError):
    """Occurrence is already paid or skipped."""

    code = "occurrence_not_payable"


class UnparseableIntentError(LedgerError):
    """The intent extractor's payload is not a valid command."""

    code = "unparseable_intent"

    def __init__(self, message: str, errors: Optional[list[dict]] = None):
        super().__init__(message)
        self.errors = errors or []
