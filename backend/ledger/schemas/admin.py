"""Pydantic schemas for admin operations"""
from pydantic import BaseModel, Field
from typing import Literal, Optional


class RefundRequest(BaseModel):
    """Schema for refunding a transaction"""
    transaction_id: int
    reason: Optional[str] = Field(None, max_length=500)


class PayoutHoldRequest(BaseModel):
    """Schema for placing or lifting a payout hold"""
    author_id: int
    hold: bool
    reason: Optional[str] = Field(None, max_length=500)


class ProcessPayoutRequest(BaseModel):
    """Schema for an admin-triggered payout (defaults to the full available balance)"""
    author_id: int
    amount_cents: Optional[int] = Field(None, gt=0)


class FraudReviewRequest(BaseModel):
    """Schema for closing a fraud flag"""
    flag_id: int
    status: Literal["reviewed", "dismissed"]
    notes: Optional[str] = Field(None, max_length=2000)
