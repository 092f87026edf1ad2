import httpx
import pytest
from cryptography.fernet import Fernet

from loyalty_engine_api.core.security import TokenEncryptionError, decrypt_token, encrypt_token
from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.models.merchant import Merchant
from loyalty_engine_api.services.square.client import SquareApiError, SquareClient, SquareRateLimitError


def _client(handler, *, sleeps=None, max_retries=2) -> SquareClient:
    async def fake_sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return SquareClient(
        "sq0atp-test",
        merchant_id="merchant-1",
        base_url="https://square.test/v2",
        max_retries=max_retries,
        default_retry_after_seconds=1.5,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=fake_sleep,
    )


@pytest.mark.asyncio
async def test_get_order_sends_auth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"order": {"id": "ORDER_1", "state": "COMPLETED"}})

    client = _client(handler)
    order = await client.get_order("ORDER_1")

    assert order == {"id": "ORDER_1", "state": "COMPLETED"}
    assert str(seen[0].url) == "https://square.test/v2/orders/ORDER_1"
    assert seen[0].headers["Authorization"] == "Bearer sq0atp-test"
    assert seen[0].headers["Square-Version"] == settings.square_api_version


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after_then_succeeds() -> None:
    sleeps: list[float] = []
    responses = iter(
        [
            httpx.Response(429, headers={"retry-after": "3"}),
            httpx.Response(429),
            httpx.Response(200, json={"customers": [{"id": "cust_1"}]}),
        ]
    )

    client = _client(lambda request: next(responses), sleeps=sleeps)
    customers = await client.search_customers_by_phone("+15551234567")

    assert customers == [{"id": "cust_1"}]
    assert sleeps == [3.0, 1.5]


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_retries() -> None:
    sleeps: list[float] = []
    client = _client(lambda request: httpx.Response(429, headers={"retry-after": "2"}), sleeps=sleeps, max_retries=1)

    with pytest.raises(SquareRateLimitError) as excinfo:
        await client.get_order("ORDER_1")

    assert excinfo.value.status == 429
    assert excinfo.value.details == {"retry_after": 2.0}
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_not_found_returns_none_for_lookups() -> None:
    client = _client(lambda request: httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]}))

    assert await client.get_order("ORDER_MISSING") is None
    assert await client.get_loyalty_account("ACCT_MISSING") is None


@pytest.mark.asyncio
async def test_error_response_raises_with_details() -> None:
    body = {"errors": [{"category": "INVALID_REQUEST_ERROR", "code": "BAD_REQUEST", "detail": "Invalid query"}]}
    client = _client(lambda request: httpx.Response(400, json=body))

    with pytest.raises(SquareApiError) as excinfo:
        await client.search_loyalty_events({"filter": {}})

    assert excinfo.value.status == 400
    assert excinfo.value.endpoint == "/loyalty/events/search"
    assert excinfo.value.details == body
    assert "Invalid query" in str(excinfo.value)


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SquareApiError) as excinfo:
        await _client(handler).get_customer("cust_1")

    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_for_merchant_decrypts_stored_token(session_factory, monkeypatch) -> None:
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setattr(settings, "token_encryption_key", key)

    async with session_factory() as session:
        merchant = Merchant(
            business_name="Corner Pet Supply",
            square_merchant_id="MLSQ_CORNER",
            square_access_token=encrypt_token("sq0atp-live"),
        )
        bare = Merchant(business_name="No Token", square_merchant_id="MLSQ_BARE")
        session.add_all([merchant, bare])
        await session.commit()

        client = await SquareClient.for_merchant(session, merchant.id)
        assert client.merchant_id == str(merchant.id)
        assert client._headers["Authorization"] == "Bearer sq0atp-live"
        await client.aclose()

        with pytest.raises(SquareApiError):
            await SquareClient.for_merchant(session, bare.id)


def test_token_round_trip_requires_matching_key() -> None:
    key = Fernet.generate_key().decode("utf-8")
    other = Fernet.generate_key().decode("utf-8")
    ciphertext = encrypt_token("sq0atp-live", key=key)

    assert ciphertext != "sq0atp-live"
    assert decrypt_token(ciphertext, key=key) == "sq0atp-live"
    with pytest.raises(TokenEncryptionError):
        decrypt_token(ciphertext, key=other)
    with pytest.raises(TokenEncryptionError):
        encrypt_token("sq0atp-live", key="not-a-key")
