"""Pydantic schemas for author payouts and ledger rows"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PayoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    currency: str
    status: str
    external_payout_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    processed_by: Optional[int] = None
    created_at: datetime


class RevenueOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    gross_amount_cents: int
    platform_fee_cents: int
    net_amount_cents: int
    currency: str
    description: Optional[str] = None
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    author_id: Optional[int] = None
    type: str
    status: str
    amount_cents: int
    platform_fee_cents: int
    author_earning_cents: int
    currency: str
    refunded_transaction_id: Optional[int] = None
    created_at: datetime


class FraudFlagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    flag_type: str
    details: dict
    status: str
    review_notes: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime


class PayoutAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    author_id: int
    external_account_ref: str
    onboarding_complete: bool
    payouts_enabled: bool
    payout_hold: bool
    hold_reason: Optional[str] = None
    hold_set_by: Optional[int] = None
    hold_set_at: Optional[datetime] = None
