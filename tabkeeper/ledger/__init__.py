"""
Ledger package.

- BalanceLedger: the only writer of cached balances
- CounterpartyDirectory: name resolution and read-only counterparty views
- SettlementProcessor: expenses, lendings, payments and settlements
"""

from tabkeeper.ledger.balance import BalanceLedger
from tabkeeper.ledger.counterparties import CounterpartyDirectory, normalize_name
from tabkeeper.ledger.settlement import SettlementProcessor

__all__ = [
    "BalanceLedger",
    "CounterpartyDirectory",
    "SettlementProcessor",
    "normalize_name",
]
