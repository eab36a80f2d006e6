"""
Append-only transaction ledger.

Models are not imported here to avoid AppRegistryNotReady errors; import
them from escrow.ledger.models (or escrow.models).

Usage:
    from escrow.ledger.services import LedgerService
    from escrow.ledger.types import Money, RecordTransactionParams
"""
