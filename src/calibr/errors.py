"""Domain errors raised by the ledger, sizing and service layers.

Every error carries an HTTP-ish ``status_code`` so a routing layer can map it
without inspecting messages.
"""

from __future__ import annotations


class CalibrError(Exception):
    """Base class for all Calibr domain errors."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message}


class ValidationError(CalibrError, ValueError):
    """Input outside its documented range (probability, price, fraction...)."""


class NotFoundError(CalibrError):
    """Referenced market, forecast or calibration row does not exist."""

    status_code = 404


class InactiveMarketError(CalibrError):
    """Market is resolved or closed; forecasts can no longer be written."""


class AlreadyAttestedError(CalibrError):
    """Forecast already carries an EAS attestation UID."""


class ImmutableForecastError(CalibrError):
    """Forecast is attested on-chain and can no longer be deleted."""


class ConcurrentWriteError(CalibrError):
    """Another writer appended to the same forecast chain first."""

    status_code = 409


class ChainIntegrityError(CalibrError):
    """A forecast version chain contains a cycle or out-of-order link."""

    status_code = 500


class PrivateProfileError(CalibrError):
    """Forecaster opted out of public profile views."""

    status_code = 403
