import logging
from typing import Optional

import httpx
from redis.exceptions import RedisError

from ..config import get_settings
from .allocation import round2
from .storage import get_redis_client


logger = logging.getLogger(__name__)

# Only the display pair has a built-in fallback
FALLBACK_PAIR = ("USD", "CNY")


def cache_key(base: str, target: str) -> str:
    return f"exchange:{base.upper()}:{target.upper()}"


async def get_cached_rate(base: str, target: str) -> Optional[float]:
    """
    Check Redis for a recently fetched rate.

    Returns:
        The cached rate, or None if absent or storage is unavailable
    """
    try:
        raw = await get_redis_client().get(cache_key(base, target))
    except RedisError as exc:
        logger.warning("Exchange rate cache unavailable: %s", exc)
        return None

    return float(raw) if raw is not None else None


async def save_rate(base: str, target: str, rate: float) -> bool:
    """Cache a rate for ``exchange_cache_seconds``. Returns False if it could not be stored."""
    settings = get_settings()
    try:
        await get_redis_client().set(
            cache_key(base, target),
            str(rate),
            ex=settings.exchange_cache_seconds,
        )
    except RedisError as exc:
        logger.warning("Could not cache exchange rate %s/%s: %s", base, target, exc)
        return False
    return True


async def fetch_rate_from_api(base: str, target: str) -> Optional[float]:
    """
    Fetch the latest exchange rate from frankfurter.app.

    Args:
        base: Source currency code
        target: Target currency code

    Returns:
        The exchange rate, or None if fetch failed
    """
    settings = get_settings()

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{settings.exchange_api_url}/latest",
                params={
                    "from": base.upper(),
                    "to": target.upper(),
                },
                timeout=10.0,
            )

            if response.status_code == 200:
                data = response.json()
                rates = data.get("rates", {})
                return rates.get(target.upper())
        except httpx.RequestError as exc:
            logger.warning("Exchange rate request failed: %s", exc)

    return None


async def fetch_rate(base: str = "USD", target: str = "CNY") -> tuple[float, str, bool]:
    """
    Get an exchange rate, trying cache first, then the API.

    The USD/CNY display pair falls back to a configured rate when both fail.

    Returns:
        Tuple of (rate, source, cached)

    Raises:
        ValueError: If no rate can be found for the pair
    """
    cached = await get_cached_rate(base, target)
    if cached is not None:
        return cached, "cache", True

    rate = await fetch_rate_from_api(base, target)
    if rate is not None:
        await save_rate(base, target, rate)
        return rate, "frankfurter", False

    if (base.upper(), target.upper()) == FALLBACK_PAIR:
        return get_settings().exchange_fallback_rate, "fallback", False

    raise ValueError(f"Could not fetch exchange rate for {base} to {target}")


def convert_amount(amount: float, rate: float) -> float:
    return round2(amount * rate)
