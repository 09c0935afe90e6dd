"""Async client for the LiteAPI hotel-data provider.

Provider failures are raised as :class:`HotelDataError` carrying the HTTP
status the API should answer with: 408 on timeout, 429 with ``retry_after``,
404 when the hotel is unknown, the provider's own status otherwise. Nothing
is retried.
"""

import logging
import math
import time
from typing import Any, Callable, Dict

import httpx

from ..settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60
MAX_REVIEWS_REQUESTED = 300


class HotelDataError(Exception):
    """A hotel-data provider failure translated for the client."""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        retry_after: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.message = message
        self.retry_after = retry_after
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.error, "message": self.message}
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


def retry_after_from(headers: httpx.Headers, now: float) -> int:
    """Seconds until the provider's ``x-ratelimit-reset`` epoch, or 60 if it is absent."""
    reset = headers.get("x-ratelimit-reset")
    if not reset:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, math.ceil(float(reset) - now))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


class LiteApiClient:
    """Key-authenticated GETs against ``/data/hotel`` and ``/data/reviews``."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.liteapi.travel/v3.0",
        timeout_seconds: float = 30.0,
        details_timeout_seconds: float = 8.0,
        reviews_timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._api_key = api_key
        self._details_timeout = details_timeout_seconds
        self._reviews_timeout = reviews_timeout_seconds
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-API-Key": api_key or "", "Content-Type": "application/json"},
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LiteApiClient":
        return cls(
            api_key=settings.liteapi_key,
            base_url=settings.liteapi_base_url,
            timeout_seconds=settings.liteapi_timeout_seconds,
            details_timeout_seconds=settings.liteapi_details_timeout_seconds,
            reviews_timeout_seconds=settings.liteapi_reviews_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Dict[str, Any], timeout: float, not_found: str) -> Dict[str, Any]:
        if not self._api_key:
            logger.error("LITEAPI_KEY is not set")
            raise HotelDataError(
                500, "API configuration error", "Hotel data service is temporarily unavailable"
            )
        try:
            response = await self._client.get(path, params=params, timeout=timeout)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning("LiteAPI %s timed out: %s", path, e)
            raise HotelDataError(
                408, "Request timeout", "The hotel provider is taking longer than usual. Please try again."
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("LiteAPI %s returned %s", path, status)
            if status == 429:
                raise HotelDataError(
                    429,
                    "Rate limit exceeded",
                    "Too many requests. Please try again in a few minutes.",
                    retry_after=retry_after_from(e.response.headers, self._clock()),
                ) from e
            if status == 404:
                raise HotelDataError(404, "Hotel not found", not_found) from e
            raise HotelDataError(
                status, "Hotel provider error", f"Hotel provider responded with status {status}"
            ) from e
        except httpx.RequestError as e:
            logger.warning("LiteAPI %s request failed: %s", path, e)
            raise HotelDataError(502, "Hotel provider unreachable", "Unable to reach the hotel provider") from e

        try:
            return response.json()
        except ValueError as e:
            raise HotelDataError(502, "Hotel provider error", "Hotel provider sent an invalid response") from e

    async def get_hotel(self, hotel_id: str) -> Dict[str, Any]:
        """Full hotel record (``{"data": {...}}`` envelope)."""
        logger.info("Fetching hotel details for %s", hotel_id)
        return await self._get(
            "/data/hotel",
            {"hotelId": hotel_id},
            self._details_timeout,
            "Hotel details not found",
        )

    async def get_reviews(
        self,
        hotel_id: str,
        limit: int = 50,
        offset: int = 0,
        get_sentiment: bool = True,
    ) -> Dict[str, Any]:
        """Raw reviews. Over-fetches (4x, capped at 300) since many get filtered out."""
        params = {
            "hotelId": hotel_id,
            "limit": min(limit * 4, MAX_REVIEWS_REQUESTED),
            "offset": offset,
            "getSentiment": str(get_sentiment).lower(),
            "timeout": int(self._reviews_timeout),
        }
        logger.info("Fetching reviews for %s (limit=%s)", hotel_id, params["limit"])
        return await self._get("/data/reviews", params, self._reviews_timeout, "No reviews available for this hotel")
