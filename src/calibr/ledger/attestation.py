"""EAS attestation payloads for forecasts.

Clients sign the attestation themselves; this module only describes what to
sign and where the resulting attestation can be inspected.
"""

from __future__ import annotations

from calibr.ledger.models import Forecast

SCHEMA_NAME = "CalibrForecast"
SCHEMA_STRING = (
    "uint256 probability,string marketId,string platform,"
    "uint256 confidence,string reasoning,bool isPublic"
)
PLATFORM = "calibr"

BASE_MAINNET_CHAIN_ID = 8453
BASE_SEPOLIA_CHAIN_ID = 84532

_EASSCAN_HOSTS = {
    BASE_MAINNET_CHAIN_ID: "https://base.easscan.org",
    BASE_SEPOLIA_CHAIN_ID: "https://base-sepolia.easscan.org",
}


def attestation_fields(forecast: Forecast) -> dict[str, object]:
    """Schema fields with probability (1-99) and confidence (0-100) as percents."""
    return {
        "probability": round(forecast.probability * 100),
        "marketId": forecast.market_id,
        "platform": PLATFORM,
        "confidence": round(forecast.confidence * 100),
        "reasoning": forecast.commit_message or "",
        "isPublic": forecast.is_public,
    }


def build_attestation_payload(forecast: Forecast) -> dict[str, object]:
    return {
        "forecastId": forecast.id,
        "isAttested": forecast.is_attested,
        "existingUid": forecast.eas_attestation_uid,
        "attestationData": {
            "schema": SCHEMA_NAME,
            "schemaString": SCHEMA_STRING,
            "fields": attestation_fields(forecast),
        },
    }


def easscan_url(attestation_uid: str, chain_id: int) -> str:
    # Anything that is not Base mainnet is shown on the Sepolia explorer.
    host = _EASSCAN_HOSTS.get(chain_id, _EASSCAN_HOSTS[BASE_SEPOLIA_CHAIN_ID])
    return f"{host}/attestation/view/{attestation_uid}"
