"""Hourly electricity price sources."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Protocol

import requests  # type: ignore[import-untyped]

from ..schemas import HourlyPrice
from .client import ApiClient, ApiError
from .config import settings
from .utils import logger

# Indicator 1001 is the regulated PVPC tariff; geo id 8741 is the peninsula.
PVPC_INDICATOR = 1001
GEO_ID_PENINSULA = 8741


class NoDataAvailable(RuntimeError):
    """Raised when no price curve can be obtained for a date."""


class PriceSource(Protocol):
    """Port supplying the hourly price curve of a calendar date."""

    def get_prices(self, target_date: date) -> list[HourlyPrice]:
        ...


def _extract_hour(value: str) -> int | None:
    try:
        return datetime.fromisoformat(value).hour
    except ValueError:
        time_part = value.partition("T")[2]
        hour, _, _ = time_part.partition(":")
        return int(hour) if hour.isdigit() else None


def parse_esios_values(payload: dict[str, Any]) -> list[HourlyPrice]:
    """Convert an ESIOS indicator payload (EUR/MWh) into hourly EUR/kWh prices."""
    try:
        values = payload["indicator"]["values"]
    except (KeyError, TypeError) as exc:
        raise NoDataAvailable("Malformed ESIOS response: missing indicator values.") from exc

    prices: list[HourlyPrice] = []
    for entry in values:
        geo_id = entry.get("geo_id")
        if geo_id is not None and geo_id != GEO_ID_PENINSULA:
            continue
        hour = _extract_hour(str(entry.get("datetime", "")))
        value = entry.get("value")
        if hour is None or value is None:
            continue
        prices.append(HourlyPrice(hour=hour, price=float(value) / 1000.0))

    # Stable sort: a repeated local hour on a 25-hour day stays visible.
    return sorted(prices, key=lambda price: price.hour)


class EsiosPriceSource(PriceSource):
    """Fetch day-ahead PVPC prices from the ESIOS REST API."""

    def __init__(self, client: ApiClient | None = None) -> None:
        self._client = client or ApiClient(
            settings.esios_base_url,
            api_key=settings.esios_token,
            api_key_header="x-api-key",
        )

    def get_prices(self, target_date: date) -> list[HourlyPrice]:
        if not self._client.api_key:
            raise NoDataAvailable("ESIOS_TOKEN is not configured.")

        params = {
            "start_date": f"{target_date.isoformat()}T00:00:00",
            "end_date": f"{target_date.isoformat()}T23:59:59",
            "geo_ids[]": GEO_ID_PENINSULA,
        }
        logger.bind(date=target_date.isoformat()).debug("Fetching PVPC prices")
        try:
            response = self._client.request(
                "get", f"/indicators/{PVPC_INDICATOR}", params=params
            )
            payload = response.json()
        except (ApiError, requests.RequestException, ValueError) as exc:
            logger.bind(date=target_date.isoformat()).warning(
                "PVPC price fetch failed: {}", exc
            )
            raise NoDataAvailable(f"Prices for {target_date} unavailable: {exc}") from exc

        prices = parse_esios_values(payload)
        if not prices:
            raise NoDataAvailable(f"No prices published for {target_date}.")
        if len(prices) != 24:
            logger.bind(date=target_date.isoformat(), count=len(prices)).warning(
                "Expected 24 hourly prices"
            )
        return prices

    def close(self) -> None:
        self._client.close()


__all__ = [
    "EsiosPriceSource",
    "NoDataAvailable",
    "PriceSource",
    "parse_esios_values",
]
