"""
Pydantic v2 schemas for quote negotiation.

The submit body has no ``total``: the total is always computed server-side,
and an unexpected ``total`` key in the body is ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class QuoteSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    labor_cents: int = Field(ge=0, description="Labor amount in cents")
    materials_cents: int = Field(default=0, ge=0, description="Materials amount in cents")


class QuoteRespondRequest(BaseModel):
    accept: bool
    expected_version: int = Field(
        ge=1,
        description="Quote version the customer is responding to",
    )
