"""
Pytest configuration and fixtures for backend tests.

Provides common test fixtures for the async client, database sessions,
actors per role and declarations in the states most tests start from.
"""
import uuid
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from customs.main import app
from customs.api.v1.deps import get_ceisa_client
from customs.core.database import get_db, Base
from customs.core.roles import Actor, actor_for_role
from customs.integrations.ceisa.client import CeisaClient, GatewayResponse
from customs.models.declaration import Declaration, DeclarationType, DocumentCategory
from customs.services.declaration.lifecycle import DeclarationService
from customs.services.edi.diagnostics import DiagnosticRecorder


# A file database so several sessions can share one schema in concurrency tests
@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'customs.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session


# =============================================================================
# Actors
# =============================================================================

@pytest.fixture
def operator() -> Actor:
    return actor_for_role(uuid.uuid4(), "operator", email="operator@example.co.id")


@pytest.fixture
def supervisor() -> Actor:
    return actor_for_role(uuid.uuid4(), "supervisor", email="supervisor@example.co.id")


@pytest.fixture
def admin() -> Actor:
    return actor_for_role(uuid.uuid4(), "admin", email="admin@example.co.id")


@pytest.fixture
def system() -> Actor:
    return actor_for_role(None, "system", email="system")


@pytest.fixture
def auth_headers():
    """Build the upstream identity headers for an actor."""
    def headers_for(actor: Actor) -> dict:
        headers = {"X-Actor-Role": actor.role}
        if actor.user_id:
            headers["X-Actor-Id"] = str(actor.user_id)
        if actor.email:
            headers["X-Actor-Email"] = actor.email
        return headers
    return headers_for


# =============================================================================
# Declarations
# =============================================================================

PIB_FIELDS = {
    "trader_npwp": "01.234.567.8-901.000",
    "trader_name": "PT Sinar Impor",
    "counterparty_name": "Acme Trading Ltd",
    "counterparty_country": "sg",
    "customs_office_code": "040300",
    "transport_mode": "SEA",
    "incoterm_code": "CIF",
    "currency_code": "USD",
    "exchange_rate": Decimal("15000"),
    "freight_value": Decimal("300"),
    "insurance_value": Decimal("50"),
}

PEB_FIELDS = {
    "trader_npwp": "02.345.678.9-012.000",
    "trader_name": "PT Ekspor Nusantara",
    "counterparty_name": "Global Buyer GmbH",
    "counterparty_country": "DE",
    "customs_office_code": "040300",
    "transport_mode": "AIR",
    "incoterm_code": "FCA",
    "currency_code": "USD",
    "exchange_rate": Decimal("15000"),
}

ITEM = {
    "hs_code": "8471.30.10",
    "description": "Portable computers",
    "quantity": Decimal("10"),
    "quantity_unit": "PCE",
    "net_weight": Decimal("20"),
    "gross_weight": Decimal("25"),
    "unit_price": Decimal("100"),
    "country_of_origin": "cn",
    "bm_rate": Decimal("5"),
}

TRANSPORT_DOCUMENT = {
    "SEA": DocumentCategory.BILL_OF_LADING,
    "AIR": DocumentCategory.AIR_WAYBILL,
}


@pytest.fixture
def item_data() -> dict:
    return dict(ITEM)


async def create_complete_declaration(
    db: AsyncSession,
    actor: Actor,
    declaration_type: DeclarationType = DeclarationType.PIB,
    items=None,
    **overrides,
) -> Declaration:
    """A DRAFT declaration that passes every submission rule."""
    base = PIB_FIELDS if declaration_type == DeclarationType.PIB else PEB_FIELDS
    fields = {**base, **overrides}
    service = DeclarationService(db)
    declaration = await service.create_declaration(
        actor, declaration_type, fields=fields, items=items if items is not None else [ITEM]
    )
    categories = [DocumentCategory.INVOICE, DocumentCategory.PACKING_LIST]
    transport_document = TRANSPORT_DOCUMENT.get(fields.get("transport_mode"))
    if transport_document:
        categories.append(transport_document)
    for number, category in enumerate(categories, start=1):
        await service.add_supporting_document(declaration.id, actor, category, f"DOC-{number:03d}")
    return await service.get(declaration.id)


@pytest.fixture
def declaration_factory(db_session: AsyncSession, operator: Actor):
    async def factory(declaration_type: DeclarationType = DeclarationType.PIB, **overrides) -> Declaration:
        return await create_complete_declaration(db_session, operator, declaration_type, **overrides)
    return factory


@pytest_asyncio.fixture(scope="function")
async def draft_pib(declaration_factory) -> Declaration:
    return await declaration_factory(DeclarationType.PIB)


@pytest_asyncio.fixture(scope="function")
async def submitted_pib(db_session: AsyncSession, draft_pib: Declaration, operator: Actor) -> Declaration:
    return await DeclarationService(db_session).submit(draft_pib.id, operator)


@pytest_asyncio.fixture(scope="function")
async def approved_pib(db_session: AsyncSession, submitted_pib: Declaration, supervisor: Actor) -> Declaration:
    return await DeclarationService(db_session).approve(submitted_pib.id, supervisor)


# =============================================================================
# Gateway doubles
# =============================================================================

def gateway_response(body=None, http_status: int = 200, endpoint: str = "/openapi/document") -> GatewayResponse:
    return GatewayResponse(http_status=http_status, body=body, elapsed_ms=12, endpoint=endpoint)


@pytest.fixture
def mock_ceisa_client():
    """CeisaClient double; every API method is an AsyncMock."""
    client = AsyncMock(spec=CeisaClient)
    client.submit_document.return_value = gateway_response({"nomorAju": "000020-010203-20261018-000001"})
    client.fetch_documents.return_value = gateway_response({"data": []}, endpoint="/api/v1/peb")
    return client


@pytest.fixture
def recorder() -> DiagnosticRecorder:
    return DiagnosticRecorder(max_entries=50)


@pytest_asyncio.fixture(scope="function")
async def async_client(
    db_session: AsyncSession,
    mock_ceisa_client,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and gateway overrides."""

    async def override_get_db():
        yield db_session

    async def override_get_ceisa_client():
        yield mock_ceisa_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ceisa_client] = override_get_ceisa_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()
