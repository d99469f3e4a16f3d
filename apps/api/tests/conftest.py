from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.issuer import IssuerAccount, IssuerRole
from routers import rate_limit
from services import run_lock
from services.credits import CreditLedger


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_local_run_locks():
    run_lock.reset_local_run_locks()
    yield
    run_lock.reset_local_run_locks()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "truth.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


async def create_issuer(maker, issuer_id: str, balance: str = "0.00", role: str = IssuerRole.ISSUER) -> None:
    """Seed an issuer; a starting balance is bought through the ledger so replay holds."""
    async with maker() as session:
        session.add(
            IssuerAccount(
                id=issuer_id,
                email=f"{issuer_id}@example.com",
                role=role,
                credit_balance=Decimal("0.00"),
            )
        )
        await session.commit()
    if Decimal(balance) > 0:
        async with maker() as session:
            await CreditLedger().purchase(session, issuer_id, balance, description="Opening balance")
