"""Forecast ledger - append-only version chains and attestation rules."""

from calibr.ledger.attestation import build_attestation_payload, easscan_url
from calibr.ledger.ledger import (
    DEFAULT_MARKET_PRICE,
    ForecastLedger,
    build_history,
    walk_chain,
)
from calibr.ledger.models import (
    AppendResult,
    AttestationReceipt,
    Calculated,
    Forecast,
    HistoryEntry,
    MarketSnapshot,
)

__all__ = [
    "DEFAULT_MARKET_PRICE",
    "AppendResult",
    "AttestationReceipt",
    "Calculated",
    "Forecast",
    "ForecastLedger",
    "HistoryEntry",
    "MarketSnapshot",
    "build_attestation_payload",
    "build_history",
    "easscan_url",
    "walk_chain",
]
