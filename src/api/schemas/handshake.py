"""
Pydantic v2 schemas for the handshake code endpoints.

The plaintext code appears exactly once, in ``IssuedCodeOut``, returned to
the issuing party.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class IssueCodeRequest(BaseModel):
    regenerate: bool = Field(
        default=False,
        description="Replace an expired code. Ignored while a live code exists.",
    )


class IssuedCodeOut(BaseModel):
    stage: str
    code: str = Field(description="Share verbally with the other party; shown once")
    expires_at: datetime


class VerifyCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=12, pattern=r"^\s*\d+\s*$")
