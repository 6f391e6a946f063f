from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.core.config import Settings, get_settings
from tokenguard.persistence.db import get_session_factory
from tokenguard.services.costs.protection import CostProtectionMonitor
from tokenguard.services.gate import OperationGate
from tokenguard.services.ledger import TokenLedger
from tokenguard.services.notifications import NotificationSink, build_notification_sink
from tokenguard.services.payment_provider import PaymentProvider, StripePaymentProvider
from tokenguard.services.rate_limit import CounterStore, TierRateLimiter, build_counter_store
from tokenguard.services.rollover import RolloverScheduler
from tokenguard.services.webhooks import WebhookReconciler


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    notifier: NotificationSink
    ledger: TokenLedger
    rollover: RolloverScheduler
    monitor: CostProtectionMonitor
    limiter: TierRateLimiter
    webhooks: WebhookReconciler
    gate: OperationGate


def build_services(
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: CounterStore | None = None,
    notifier: NotificationSink | None = None,
    provider: PaymentProvider | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> Services:
    # Wire every component once; callers own the returned container.
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    notifier = notifier or build_notification_sink(settings)
    rollover = RolloverScheduler(session_factory=session_factory, settings=settings, time_provider=time_provider)
    ledger = TokenLedger(
        session_factory=session_factory,
        settings=settings,
        notifier=notifier,
        rollover=rollover,
        time_provider=time_provider,
    )
    monitor = CostProtectionMonitor(
        session_factory=session_factory,
        settings=settings,
        notifier=notifier,
        time_provider=time_provider,
    )
    limiter = TierRateLimiter(
        store=store or build_counter_store(settings),
        settings=settings,
        time_provider=time_provider,
    )
    webhooks = WebhookReconciler(
        session_factory=session_factory,
        ledger=ledger,
        provider=provider or StripePaymentProvider(settings=settings),
        settings=settings,
        notifier=notifier,
        time_provider=time_provider,
    )
    gate = OperationGate(session_factory=session_factory, ledger=ledger, monitor=monitor, limiter=limiter)
    return Services(
        settings=settings,
        session_factory=session_factory,
        notifier=notifier,
        ledger=ledger,
        rollover=rollover,
        monitor=monitor,
        limiter=limiter,
        webhooks=webhooks,
        gate=gate,
    )
