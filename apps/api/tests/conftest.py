import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from loyalty_engine_api.app import create_app  # noqa: E402
from loyalty_engine_api.db.base import Base  # noqa: E402
from loyalty_engine_api.db.session import get_session  # noqa: E402
from loyalty_engine_api.observability.loyalty import get_loyalty_store  # noqa: E402


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    get_loyalty_store().reset()
    yield
    get_loyalty_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def merchant(session_factory):
    from loyalty_engine_api.models.merchant import Merchant, MerchantSubscriptionStatus

    async with session_factory() as session:
        record = Merchant(
            business_name="Corner Pet Supply",
            square_merchant_id="MLSQ_CORNER",
            subscription_status=MerchantSubscriptionStatus.ACTIVE,
        )
        session.add(record)
        await session.commit()
    return record


@pytest_asyncio.fixture
async def offer(session_factory, merchant):
    from loyalty_engine_api.services.loyalty import OfferCatalog, QualifyingVariationInput

    async with session_factory() as session:
        return await OfferCatalog(session).create_offer(
            merchant.id,
            offer_name="Large bag frequent buyer",
            required_quantity=12,
            window_months=12,
            brand_name="Acme Kibble",
            size_group="large",
            variations=[
                QualifyingVariationInput("VAR_LARGE", item_name="Acme Kibble", variation_name="30lb"),
                QualifyingVariationInput("VAR_LARGE_GF", item_name="Acme Kibble GF", variation_name="30lb"),
            ],
        )
