"""
Escrow & milestone payment engine.

Holds a business's funds for a contract and releases them to the talent as
milestones (or biweekly batches of approved hours) are approved, with an
admin-arbitrated dispute path. Every movement of money is written to an
append-only ledger keyed by idempotency key.
"""
