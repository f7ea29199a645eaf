"""
Household chat assistant: calendar events, ledger transactions and memories.
"""
