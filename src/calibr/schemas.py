"""Request payload schemas.

Payloads arrive as camelCase JSON-like dicts; these pydantic models pin down
the accepted ranges and lengths. ``parse_payload`` converts pydantic failures
into :class:`calibr.errors.ValidationError` so callers only ever see domain
errors.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from calibr.errors import ValidationError
from calibr.reputation.tiers import Tier

MIN_PROBABILITY = 0.01
MAX_PROBABILITY = 0.99
MAX_COMMIT_MESSAGE_LENGTH = 1000


class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class CreateForecastRequest(_Payload):
    """Body for creating a forecast (or the next version of one)."""

    market_id: str = Field(alias="unifiedMarketId", min_length=1)
    probability: float = Field(ge=MIN_PROBABILITY, le=MAX_PROBABILITY)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    commit_message: str | None = Field(default=None, max_length=MAX_COMMIT_MESSAGE_LENGTH)
    is_public: bool = True
    kelly_fraction: float | None = Field(default=None, ge=0.0, le=1.0)
    execute_rebalance: bool = False


class UpdateForecastRequest(_Payload):
    """Body for a new version; omitted fields inherit from the chain head."""

    probability: float = Field(ge=MIN_PROBABILITY, le=MAX_PROBABILITY)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    commit_message: str | None = Field(default=None, max_length=MAX_COMMIT_MESSAGE_LENGTH)
    is_public: bool | None = None
    kelly_fraction: float | None = Field(default=None, ge=0.0, le=1.0)
    execute_rebalance: bool | None = None


class RecordAttestationRequest(_Payload):
    attestation_uid: str | None = None
    tx_hash: str | None = None
    chain_id: int | None = None
    schema_uid: str | None = None
    attester: str | None = None
    recipient: str | None = None


class ListForecastsQuery(_Payload):
    market_id: str | None = None
    include_private: bool = False
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class LeaderboardQuery(_Payload):
    tier: Tier | None = None
    min_forecasts: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    include_anonymous: bool = True


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: type[PayloadT], payload: PayloadT | Mapping[str, Any]) -> PayloadT:
    """Validate a raw mapping (or pass through an already-built model)."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(details) from e
