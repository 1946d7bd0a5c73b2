"""USD to CRC exchange rate lookup.

The Costa Rica Ministry of Finance (Hacienda) indicator API is asked first,
exchangerate.host second. When both fail the rate comes from the
``USD_TO_CRC`` environment variable, and finally from a fixed default.
"""
from __future__ import annotations

import logging
import os
import re
import threading
import time
from datetime import date
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

HACIENDA_RATE_URL = os.environ.get("HACIENDA_RATE_URL", "https://api.hacienda.go.cr/indicadores/tc/dolar")
EXCHANGERATE_HOST_URL = os.environ.get("EXCHANGERATE_HOST_URL", "https://api.exchangerate.host")
DEFAULT_USD_TO_CRC = 615.0
RATE_CACHE_SECONDS = 60 * 60 * 12  # refresh every 12 hours

_NUMERIC_TEXT = re.compile(r"^[0-9.,\s]+$")


class ExchangeRateError(Exception):
    """Raised when a rate provider cannot produce a usable rate."""


def _find_first_numeric(value: Any) -> Optional[float]:
    """Depth-first search for the first number in a decoded JSON payload."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        # skip dates and mixed strings such as "2024-01-25"
        if not text or not _NUMERIC_TEXT.match(text):
            return None
        try:
            return float(re.sub(r"\s+", "", text).replace(",", "."))
        except ValueError:
            return None
    if isinstance(value, list):
        for item in value:
            found = _find_first_numeric(item)
            if found is not None:
                return found
        return None
    if isinstance(value, dict):
        for item in value.values():
            found = _find_first_numeric(item)
            if found is not None:
                return found
    return None


def parse_hacienda_rate(payload: Any) -> Optional[float]:
    rate = None
    if isinstance(payload, dict):
        serie = payload.get("serie")
        if isinstance(serie, list) and serie and isinstance(serie[0], dict):
            first = serie[0]
            for key in ("valor", "Valor", "venta", "compra"):
                if first.get(key) is not None:
                    rate = _find_first_numeric(first[key])
                    break
        if rate is None:
            for key in ("valor", "Valor", "venta", "compra"):
                if payload.get(key) is not None:
                    rate = _find_first_numeric(payload[key])
                    break
    if rate is None:
        candidate = _find_first_numeric(payload)
        if candidate is not None and 20 < candidate < 10000:
            rate = candidate
    if rate is None or rate <= 0:
        return None
    return rate


def parse_exchangerate_host(payload: Any) -> Optional[float]:
    try:
        rate = float(payload["rates"]["CRC"])
    except (KeyError, TypeError, ValueError):
        return None
    return rate if rate > 0 else None


def fallback_rate() -> float:
    raw = os.environ.get("USD_TO_CRC")
    if raw:
        try:
            parsed = float(raw.replace(",", "."))
        except ValueError:
            parsed = 0.0
        if parsed > 0:
            return parsed
    return DEFAULT_USD_TO_CRC


class ExchangeRateClient:
    """Fetches and caches the USD to CRC selling rate."""

    def __init__(
        self,
        hacienda_url: str = HACIENDA_RATE_URL,
        fallback_url: str = EXCHANGERATE_HOST_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.hacienda_url = hacienda_url
        self.fallback_url = fallback_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._cached_rate: Optional[float] = None
        self._cache_expires_at: float = 0.0
        self._lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self._timeout, transport=self._transport)
            return self._client

    def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        try:
            response = self._get_client().get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExchangeRateError(f"Failed to contact {url}: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise ExchangeRateError(f"{url} returned invalid JSON.") from exc

    def _from_hacienda(self, on: Optional[date]) -> float:
        params = {"fecha": on.isoformat()} if on else None
        rate = parse_hacienda_rate(self._get_json(self.hacienda_url, params=params))
        if rate is None:
            raise ExchangeRateError("Hacienda response did not include a rate.")
        return rate

    def _from_exchangerate_host(self, on: Optional[date]) -> float:
        path = on.isoformat() if on else "latest"
        payload = self._get_json(f"{self.fallback_url}/{path}", params={"base": "USD", "symbols": "CRC"})
        rate = parse_exchangerate_host(payload)
        if rate is None:
            raise ExchangeRateError("exchangerate.host response did not include a CRC rate.")
        return rate

    def get_usd_to_crc(self, on: Optional[date] = None) -> float:
        """Return the rate for ``on`` (latest when omitted); never raises.

        The lock only guards the cache; provider calls run outside it so one
        slow provider does not queue every other caller.
        """
        if on is None:
            with self._lock:
                if self._cached_rate is not None and self._cache_expires_at > time.time():
                    return self._cached_rate

        for provider in (self._from_hacienda, self._from_exchangerate_host):
            try:
                rate = provider(on)
            except ExchangeRateError as exc:
                logger.warning("Exchange rate provider failed, trying the next one: %s", exc)
                continue
            if on is None:
                with self._lock:
                    self._cached_rate = rate
                    self._cache_expires_at = time.time() + RATE_CACHE_SECONDS
            return rate

        logger.error("All exchange rate providers failed; using fallback rate")
        return fallback_rate()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def usd_to_crc(amount: float, rate: float) -> float:
    return round(amount * rate, 2)


def crc_to_usd(amount: float, rate: float) -> float:
    if not rate > 0:
        raise ValueError("Exchange rate must be greater than zero.")
    return round(amount / rate, 2)


_EXCHANGE_CLIENT: Optional[ExchangeRateClient] = None


def get_exchange_client() -> ExchangeRateClient:
    global _EXCHANGE_CLIENT
    if _EXCHANGE_CLIENT is None:
        _EXCHANGE_CLIENT = ExchangeRateClient()
    return _EXCHANGE_CLIENT
