from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

import tokenguard.services.ledger as ledger_module
from tokenguard.domain.state import ACCOUNT_SUSPENDED
from tokenguard.persistence.repos.users import apply_user_mutation
from tokenguard.services.costs.protection import build_snapshot
from tokenguard.services.ledger import Operation
from tokenguard.services.webhooks import RESULT_PROCESSED
from tokenguard.tests.utils.factories import create_user, get_user, list_transactions, stripe_event


PAST_RESET = datetime(2026, 3, 1, tzinfo=timezone.utc)


async def _assert_balance_matches_ledger(session_factory, user_id: str) -> int:
    user = await get_user(session_factory, user_id)
    entries = await list_transactions(session_factory, user_id)
    assert user.token_balance == sum(entry.delta for entry in entries)
    assert user.token_balance >= 0
    return user.token_balance


@pytest.mark.asyncio
async def test_suspension_lands_while_a_debit_is_in_flight(services, session_factory, clock, monkeypatch) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=20)
    debit_read = asyncio.Event()
    suspended = asyncio.Event()
    seen_active: list[bool] = []

    async def _paused_mutation(factory, target_id, mutate, **kwargs):
        # Hold the first attempt between its read and its write.
        async def _mutate(user, session):
            seen_active.append(user.is_active)
            if not debit_read.is_set():
                debit_read.set()
                await suspended.wait()
            return await mutate(user, session)

        return await apply_user_mutation(factory, target_id, _mutate, **kwargs)

    monkeypatch.setattr(ledger_module, "apply_user_mutation", _paused_mutation)

    async def _suspend() -> bool:
        await debit_read.wait()
        snapshot = build_snapshot(await get_user(session_factory, user_id))
        try:
            return await services.monitor.suspend(user_id, snapshot=snapshot, source="audit")
        finally:
            suspended.set()

    consumed, applied = await asyncio.gather(
        services.ledger.consume(user_id, Operation(complexity="standard")),
        _suspend(),
    )

    assert applied
    # The stale read loses the compare-and-set and the retry sees the suspension.
    assert seen_active == [True, False]
    assert not consumed.ok
    assert consumed.reason == ACCOUNT_SUSPENDED
    entries = await list_transactions(session_factory, user_id)
    assert [entry.type for entry in entries].count("usage") == 0
    assert await _assert_balance_matches_ledger(session_factory, user_id) == 20


@pytest.mark.asyncio
async def test_purchase_webhooks_and_debits_share_the_balance(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=3)
    metadata = {"type": "token_purchase", "package_id": "medium", "user_id": user_id}
    intent = stripe_event(
        "payment_intent.succeeded",
        {"id": "pi_race", "object": "payment_intent", "amount_received": 1799, "metadata": metadata},
    )
    checkout = stripe_event(
        "checkout.session.completed",
        {
            "id": "cs_race",
            "object": "checkout.session",
            "mode": "payment",
            "payment_intent": "pi_race",
            "amount_total": 1799,
            "metadata": metadata,
        },
    )

    results = await asyncio.gather(
        services.webhooks.handle(intent),
        services.ledger.consume(user_id, Operation(complexity="simple")),
        services.webhooks.handle(checkout),
        services.ledger.consume(user_id, Operation(complexity="simple")),
    )

    assert [results[0].status, results[2].status] == [RESULT_PROCESSED, RESULT_PROCESSED]
    assert results[1].ok and results[3].ok
    entries = await list_transactions(session_factory, user_id)
    purchases = [entry for entry in entries if entry.type == "purchase"]
    assert len(purchases) == 1
    assert purchases[0].delta == 100
    assert await _assert_balance_matches_ledger(session_factory, user_id) == 3 + 100 - 2


@pytest.mark.asyncio
async def test_rollover_sweep_and_debits_share_the_balance(services, session_factory, clock) -> None:
    user_id = await create_user(
        session_factory, now=clock(), tier="starter", balance=5, monthly_used=30, reset_date=PAST_RESET
    )

    sweep, *debits = await asyncio.gather(
        services.rollover.sweep(),
        *(services.ledger.consume(user_id, Operation(complexity="standard")) for _ in range(3)),
    )

    assert sweep.errors == 0
    assert all(result.ok for result in debits)
    entries = await list_transactions(session_factory, user_id)
    rollovers = [entry for entry in entries if entry.type == "rollover"]
    assert len(rollovers) == 1
    assert rollovers[0].delta == 10
    # Every debit runs after the reset, so the month restarts from zero.
    user = await get_user(session_factory, user_id)
    assert user.monthly_tokens_used == 9
    assert await _assert_balance_matches_ledger(session_factory, user_id) == 5 + 10 - 9
