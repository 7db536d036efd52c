"""
Pydantic schemas for price quotes.
"""

from datetime import date
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator


class Quote(BaseModel):
    amount: Decimal
    days: int
    tier: Literal["daily", "weekly", "monthly"]


class QuoteRequest(BaseModel):
    start_date: date
    end_date: date
    daily_rate: Decimal = Field(..., ge=0)
    weekly_rate: Optional[Decimal] = Field(None, ge=0)
    monthly_rate: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self
