"""Per-merchant Square REST client with rate-limit retries and structured request logs."""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Mapping
from uuid import UUID

import httpx
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.core.security import decrypt_token
from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.models.merchant import Merchant

Sleep = Callable[[float], Awaitable[None]]

_log = logger.bind(category="LOYALTY:SQUARE_API")


class SquareApiError(RuntimeError):
    """Non-success response (or transport failure) from the Square API."""

    code = "api_error"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        endpoint: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint
        self.details = details


class SquareRateLimitError(SquareApiError):
    code = "rate_limited"


def _error_message(status: int, body: Any) -> str:
    if isinstance(body, Mapping):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], Mapping) else {}
            detail = first.get("detail") or first.get("code")
            if detail:
                return f"Square API error {status}: {detail}"
    return f"Square API error {status}"


def _parse_retry_after(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


class SquareClient:
    """Authenticated wrapper around the Square v2 REST API for one merchant."""

    def __init__(
        self,
        access_token: str,
        *,
        merchant_id: UUID | str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        default_retry_after_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("Square access token is required")
        self.merchant_id = str(merchant_id) if merchant_id is not None else None
        self._base_url = (base_url or settings.square_api_base_url).rstrip("/")
        self._timeout = timeout_seconds or settings.square_request_timeout_seconds
        self._max_retries = settings.square_max_retries if max_retries is None else max_retries
        self._default_retry_after = (
            settings.square_default_retry_after_seconds
            if default_retry_after_seconds is None
            else default_retry_after_seconds
        )
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Square-Version": api_version or settings.square_api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self._sleep = sleep or asyncio.sleep

    @classmethod
    async def for_merchant(cls, session: AsyncSession, merchant_id: UUID, **kwargs: Any) -> "SquareClient":
        """Load the merchant's stored token, decrypt it, and build a client."""

        merchant = await session.get(Merchant, merchant_id)
        if merchant is None or not merchant.is_active:
            raise SquareApiError(f"Merchant {merchant_id} not found or inactive", status=None)
        if not merchant.square_access_token:
            raise SquareApiError(f"Merchant {merchant_id} has no Square access token", status=None)
        token = decrypt_token(merchant.square_access_token)
        return cls(token, merchant_id=merchant_id, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SquareClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        url = f"{self._base_url}{endpoint}"
        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                response = await self._client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._headers,
                    timeout=timeout or self._timeout,
                )
            except httpx.TimeoutException as exc:
                self._log_request(method, endpoint, started, status=None, success=False, error="timeout")
                raise SquareApiError(f"Square request timed out: {method} {endpoint}", endpoint=endpoint) from exc
            except httpx.HTTPError as exc:
                self._log_request(method, endpoint, started, status=None, success=False, error=str(exc))
                raise SquareApiError(f"Square request failed: {exc}", endpoint=endpoint) from exc

            status = response.status_code
            if status == 429:
                retry_after = _parse_retry_after(response.headers.get("retry-after"), self._default_retry_after)
                self._log_request(method, endpoint, started, status=status, success=False, retry_after=retry_after)
                if attempt >= self._max_retries:
                    raise SquareRateLimitError(
                        f"Square rate limit exceeded after {attempt} retries",
                        status=status,
                        endpoint=endpoint,
                        details={"retry_after": retry_after},
                    )
                attempt += 1
                await self._sleep(retry_after)
                continue

            body = self._decode(response)
            if status == 404 and allow_not_found:
                self._log_request(method, endpoint, started, status=status, success=True, not_found=True)
                return None
            if status >= 400:
                self._log_request(method, endpoint, started, status=status, success=False)
                raise SquareApiError(_error_message(status, body), status=status, endpoint=endpoint, details=body)

            self._log_request(method, endpoint, started, status=status, success=True)
            return body if isinstance(body, dict) else {}

    def _log_request(
        self,
        method: str,
        endpoint: str,
        started: float,
        *,
        status: int | None,
        success: bool,
        **extra: Any,
    ) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        log = _log.info if success else _log.warning
        log(
            "Square API request",
            merchant_id=self.merchant_id,
            endpoint=endpoint,
            method=method,
            status=status,
            duration_ms=duration_ms,
            success=success,
            **extra,
        )

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    # Orders

    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        data = await self.request("GET", f"/orders/{order_id}", allow_not_found=True)
        return data.get("order") if data else None

    async def search_orders(
        self,
        location_ids: list[str],
        *,
        query: Mapping[str, Any] | None = None,
        limit: int = 100,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"location_ids": location_ids, "limit": limit}
        if query:
            payload["query"] = dict(query)
        if cursor:
            payload["cursor"] = cursor
        data = await self.request(
            "POST", "/orders/search", json=payload, timeout=settings.square_search_timeout_seconds
        )
        return data or {}

    # Customers

    async def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        data = await self.request("GET", f"/customers/{customer_id}", allow_not_found=True)
        return data.get("customer") if data else None

    async def search_customers(self, query: Mapping[str, Any], *, limit: int = 10) -> list[dict[str, Any]]:
        data = await self.request(
            "POST",
            "/customers/search",
            json={"query": dict(query), "limit": limit},
            timeout=settings.square_search_timeout_seconds,
        )
        return list((data or {}).get("customers") or [])

    async def search_customers_by_phone(self, phone: str) -> list[dict[str, Any]]:
        return await self.search_customers({"filter": {"phone_number": {"exact": phone}}}, limit=1)

    async def search_customers_by_email(self, email: str) -> list[dict[str, Any]]:
        return await self.search_customers({"filter": {"email_address": {"exact": email}}}, limit=1)

    async def create_customer(
        self, payload: Mapping[str, Any], *, idempotency_key: str | None = None
    ) -> dict[str, Any] | None:
        body = {"idempotency_key": idempotency_key or str(uuid.uuid4()), **payload}
        data = await self.request("POST", "/customers", json=body)
        return data.get("customer") if data else None

    # Loyalty

    async def get_loyalty_program(self) -> dict[str, Any] | None:
        data = await self.request("GET", "/loyalty/programs/main", allow_not_found=True)
        return data.get("program") if data else None

    async def search_loyalty_events(self, query: Mapping[str, Any], *, limit: int = 30) -> list[dict[str, Any]]:
        data = await self.request(
            "POST",
            "/loyalty/events/search",
            json={"query": dict(query), "limit": limit},
            timeout=settings.square_search_timeout_seconds,
        )
        return list((data or {}).get("events") or [])

    async def get_loyalty_account(self, account_id: str) -> dict[str, Any] | None:
        data = await self.request("GET", f"/loyalty/accounts/{account_id}", allow_not_found=True)
        return data.get("loyalty_account") if data else None

    # Catalog

    async def batch_upsert_catalog(
        self, objects: list[Mapping[str, Any]], *, idempotency_key: str | None = None
    ) -> dict[str, Any]:
        body = {
            "idempotency_key": idempotency_key or str(uuid.uuid4()),
            "batches": [{"objects": [dict(item) for item in objects]}],
        }
        data = await self.request("POST", "/catalog/batch-upsert", json=body)
        return data or {}

    async def delete_catalog_object(self, object_id: str) -> dict[str, Any] | None:
        return await self.request("DELETE", f"/catalog/object/{object_id}", allow_not_found=True)


__all__ = ["SquareApiError", "SquareClient", "SquareRateLimitError"]
