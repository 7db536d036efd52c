"""
Price quotes.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import NotFoundError
from studyhall.db.session import get_db
from studyhall.models.venue import Venue
from studyhall.schemas.pricing import Quote, QuoteRequest
from studyhall.services.pricing_service import price, quote_for_venue

router = APIRouter(tags=["Pricing"])


@router.post("/quotes", response_model=Quote)
async def quote(body: QuoteRequest):
    """Cheapest tier for explicit rates."""
    return price(body.start_date, body.end_date, body.daily_rate, body.weekly_rate, body.monthly_rate)


@router.get("/venues/{venue_id}/quote", response_model=Quote)
async def venue_quote(
    venue_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: AsyncSession = Depends(get_db),
):
    """Quote at the venue's current rates."""
    venue = await db.get(Venue, venue_id)
    if venue is None:
        raise NotFoundError(f"Venue {venue_id} not found")
    return quote_for_venue(venue, start_date, end_date)
