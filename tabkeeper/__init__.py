"""
tabkeeper - Source Package

Keeps a running tab of shared-money obligations ("who owes whom") and
recurring bills for a chat assistant.

DESIGN PRINCIPLES:
1. The intent extractor proposes a command, the core executes it
2. Balances are a projection of pending dues, never free-standing state
3. Every balance change is paired with its due change in one transaction
4. Every step is auditable
5. Storage is reached only through the storage package
"""

__version__ = "1.0.0"
__author__ = "tabkeeper Team"
