"""Domain layer: ledger events and the account aggregate.

This package defines the primitives that every other layer depends on
but never modifies.  Everything here is immutable.
"""
