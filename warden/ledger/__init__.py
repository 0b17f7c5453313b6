"""Interaction ledger."""

from warden.ledger.ledger import InteractionLedger, LedgerStore
from warden.ledger.schemas import InteractionInput, InteractionRecord

__all__ = ["InteractionInput", "InteractionLedger", "InteractionRecord", "LedgerStore"]
