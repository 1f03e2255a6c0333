from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from ..models import ExchangeRateResponse
from ..services.exchange import convert_amount, fetch_rate

router = APIRouter(prefix="/exchange-rate", tags=["Exchange Rates"])


@router.get("", response_model=ExchangeRateResponse)
async def get_exchange_rate(
    base: str = Query("USD", description="Source currency code (e.g., USD)"),
    target: str = Query("CNY", description="Target currency code (e.g., CNY)"),
    amount: Optional[float] = Query(None, ge=0, description="Optional amount to convert"),
) -> ExchangeRateResponse:
    """
    Get the latest exchange rate for displaying amounts in a second currency.

    Checks cache first, then fetches from frankfurter.app if not cached.
    """
    try:
        rate, source, cached = await fetch_rate(base, target)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch exchange rate: {str(e)}")

    return ExchangeRateResponse(
        base=base.upper(),
        target=target.upper(),
        rate=rate,
        source=source,
        cached=cached,
        amount=amount,
        converted=convert_amount(amount, rate) if amount is not None else None,
    )
