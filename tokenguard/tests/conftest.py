from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tokenguard.core.config import Settings, get_settings
from tokenguard.domain.models import Base
from tokenguard.persistence.db import build_engine, build_session_factory
from tokenguard.services.container import build_services
from tokenguard.services.notifications import InMemoryNotificationSink
from tokenguard.services.rate_limit import InMemoryCounterStore
from tokenguard.tests.utils.factories import WEBHOOK_SECRET, FakePaymentProvider, FixedClock


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings cache between tests to avoid leaking env overrides.
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tokenguard.db'}",
        rate_limit_backend="memory",
        stripe_api_key=None,
        stripe_webhook_secret=WEBHOOK_SECRET,
        notification_webhook_url=None,
        notification_webhook_secret=None,
    )


@pytest.fixture
async def session_factory(settings: Settings):
    # One throwaway SQLite database per test; schema comes from the ORM metadata.
    engine = build_engine(settings.database_url, settings=settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def notifier() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def services(settings, session_factory, notifier, provider, clock):
    return build_services(
        settings=settings,
        session_factory=session_factory,
        store=InMemoryCounterStore(clock=clock.timestamp),
        notifier=notifier,
        provider=provider,
        time_provider=clock,
    )
