from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tokenguard.domain.state import (
    ACCOUNT_SUSPENDED,
    INSUFFICIENT_TOKENS,
    INVALID_TIER,
    MONTHLY_LIMIT_EXCEEDED,
    USER_NOT_FOUND,
)
from tokenguard.services.ledger import CreditRequest, Operation, evaluate_availability
from tokenguard.services.notifications import EVENT_LOW_BALANCE
from tokenguard.tests.utils.factories import create_user, get_user, list_transactions


async def _assert_balance_matches_ledger(session_factory, user_id: str) -> None:
    user = await get_user(session_factory, user_id)
    entries = await list_transactions(session_factory, user_id)
    assert user.token_balance == sum(entry.delta for entry in entries)
    assert user.token_balance >= 0


@pytest.mark.asyncio
async def test_free_tier_user_runs_out_after_one_standard_operation(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="free", balance=5)

    first = await services.ledger.consume(user_id, Operation(complexity="standard"))
    assert first.ok
    assert first.tokens_consumed == 3
    assert first.new_balance == 2

    second = await services.ledger.consume(user_id, Operation(complexity="standard"))
    assert not second.ok
    assert second.reason == INSUFFICIENT_TOKENS
    assert second.shortfall == 1
    assert second.new_balance == 2

    user = await get_user(session_factory, user_id)
    assert user.monthly_tokens_used == 3
    assert user.lifetime_tokens_used == 3
    await _assert_balance_matches_ledger(session_factory, user_id)


@pytest.mark.asyncio
async def test_monthly_ceiling_blocks_even_with_sufficient_balance(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro", balance=100, monthly_used=999)

    availability = await services.ledger.check_availability(user_id, "standard")
    assert not availability.available
    assert availability.reason == MONTHLY_LIMIT_EXCEEDED
    assert availability.monthly_remaining == 1

    result = await services.ledger.consume(user_id, Operation(complexity="standard"))
    assert result.reason == MONTHLY_LIMIT_EXCEEDED
    assert (await get_user(session_factory, user_id)).token_balance == 100


@pytest.mark.asyncio
async def test_availability_checks_account_state_first(services, session_factory, clock) -> None:
    suspended = await create_user(session_factory, now=clock(), tier="pro", balance=50, is_active=False)
    legacy = await create_user(session_factory, now=clock(), tier="legacy", balance=50)

    assert (await services.ledger.check_availability(suspended)).reason == ACCOUNT_SUSPENDED
    assert (await services.ledger.check_availability(legacy)).reason == INVALID_TIER
    assert (await services.ledger.check_availability("missing")).reason == USER_NOT_FOUND
    assert (await services.ledger.consume("missing", Operation())).reason == USER_NOT_FOUND


def test_unlimited_tier_has_no_monthly_ceiling() -> None:
    class _User:
        token_balance = 10
        is_active = True
        tier = "enterprise"
        monthly_tokens_used = 1_000_000
        monthly_reset_date = None

    availability = evaluate_availability(_User(), 7)
    assert availability.available
    assert availability.monthly_limit is None
    assert availability.monthly_remaining is None


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro", balance=3)

    results = await asyncio.gather(
        *(services.ledger.consume(user_id, Operation(complexity="standard")) for _ in range(5))
    )

    assert sum(1 for result in results if result.ok) == 1
    assert all(result.reason == INSUFFICIENT_TOKENS for result in results if not result.ok)
    user = await get_user(session_factory, user_id)
    assert user.token_balance == 0
    entries = await list_transactions(session_factory, user_id)
    assert [entry.type for entry in entries].count("usage") == 1
    await _assert_balance_matches_ledger(session_factory, user_id)


@pytest.mark.asyncio
async def test_credit_then_consume_round_trip(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=4)

    credited = await services.ledger.credit(user_id, CreditRequest(type="bonus", tokens=7))
    assert credited.ok
    assert credited.new_balance == 11
    consumed = await services.ledger.consume(user_id, Operation(complexity="complex"))
    assert consumed.ok
    assert consumed.new_balance == 4

    entries = await list_transactions(session_factory, user_id)
    round_trip = [entry for entry in entries if entry.type in {"bonus", "usage"} and entry.description != "opening balance"]
    assert sorted(entry.delta for entry in round_trip) == [-7, 7]
    await _assert_balance_matches_ledger(session_factory, user_id)


@pytest.mark.asyncio
async def test_purchase_credit_is_idempotent_by_reference(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter")
    request = CreditRequest(
        type="purchase", tokens=100, cost_cents=1799, package_id="medium", external_reference="pi_123"
    )

    first = await services.ledger.credit(user_id, request)
    second = await services.ledger.credit(user_id, request)

    assert first.ok and not first.duplicate
    assert second.ok and second.duplicate
    assert second.transaction_id == first.transaction_id
    user = await get_user(session_factory, user_id)
    assert user.token_balance == 100
    assert user.lifetime_tokens_purchased == 100
    assert user.last_purchase_at == clock()
    entries = await list_transactions(session_factory, user_id)
    assert len(entries) == 1
    assert entries[0].expires_at == clock() + timedelta(days=90)


@pytest.mark.asyncio
async def test_credit_rejects_debit_types_and_non_positive_amounts(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock())
    with pytest.raises(ValueError):
        await services.ledger.credit(user_id, CreditRequest(type="usage", tokens=3))
    with pytest.raises(ValueError):
        await services.ledger.credit(user_id, CreditRequest(type="bonus", tokens=0))
    missing = await services.ledger.credit("missing", CreditRequest(type="bonus", tokens=3))
    assert not missing.ok
    assert missing.reason == USER_NOT_FOUND


@pytest.mark.asyncio
async def test_low_balance_notification_fires_once_on_crossing(services, session_factory, clock, notifier) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=7)

    await services.ledger.consume(user_id, Operation(complexity="standard"))
    await services.ledger.consume(user_id, Operation(complexity="standard"))

    alerts = notifier.of_type(EVENT_LOW_BALANCE)
    assert len(alerts) == 1
    assert alerts[0]["user_id"] == user_id
    assert alerts[0]["balance"] == 4


@pytest.mark.asyncio
async def test_purchased_tokens_expire_after_ninety_days(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro")
    await services.ledger.credit(
        user_id, CreditRequest(type="purchase", tokens=100, package_id="medium", external_reference="pi_exp")
    )

    clock.advance(days=89)
    assert (await services.ledger.expire()).expired_count == 0

    clock.advance(days=2)
    result = await services.ledger.expire()
    assert result.expired_count == 1
    assert result.tokens_removed == 100

    user = await get_user(session_factory, user_id)
    assert user.token_balance == 0
    entries = await list_transactions(session_factory, user_id)
    expirations = [entry for entry in entries if entry.type == "expiration"]
    assert len(expirations) == 1
    assert expirations[0].delta == -100
    assert all(entry.is_expired for entry in entries if entry.type == "purchase")

    # A second sweep finds nothing left to expire.
    again = await services.ledger.expire()
    assert again.expired_count == 0
    await _assert_balance_matches_ledger(session_factory, user_id)


@pytest.mark.asyncio
async def test_expiry_never_removes_more_than_the_balance(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro")
    await services.ledger.credit(
        user_id, CreditRequest(type="purchase", tokens=100, package_id="medium", external_reference="pi_spent")
    )
    await services.ledger.consume(user_id, Operation(complexity="complex"))

    clock.advance(days=91)
    result = await services.ledger.expire()

    assert result.expired_count == 1
    assert result.tokens_removed == 0
    assert result.unabsorbed_count == 1
    user = await get_user(session_factory, user_id)
    assert user.token_balance == 93
    await _assert_balance_matches_ledger(session_factory, user_id)


@pytest.mark.asyncio
async def test_balance_breakdown_lists_active_lots(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro", balance=10, monthly_used=40)
    await services.ledger.credit(
        user_id, CreditRequest(type="purchase", tokens=25, package_id="small", external_reference="pi_lot")
    )

    breakdown = await services.ledger.get_balance_breakdown(user_id)

    assert breakdown.total_balance == 35
    assert breakdown.monthly_limit == 1000
    assert breakdown.monthly_remaining == 960
    assert breakdown.lifetime_purchased == 25
    purchase_lots = [lot for lot in breakdown.active_lots if lot.type == "purchase"]
    assert len(purchase_lots) == 1
    assert purchase_lots[0].package_id == "small"
    assert purchase_lots[0].tokens == 25
    assert await services.ledger.get_balance_breakdown("missing") is None


@pytest.mark.asyncio
async def test_history_is_paginated_newest_first(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="pro", balance=20)
    for _ in range(3):
        clock.advance(minutes=1)
        await services.ledger.consume(user_id, Operation(complexity="simple"))

    page, total = await services.ledger.get_history(user_id, limit=2)
    assert total == 4
    assert len(page) == 2
    assert page[0].created_at >= page[1].created_at
    assert page[0].balance_after == 17

    usage, usage_total = await services.ledger.get_history(user_id, transaction_type="usage")
    assert usage_total == 3
    assert all(entry.type == "usage" for entry in usage)


@pytest.mark.asyncio
async def test_verify_balance_detects_consistency(services, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=12)
    await services.ledger.consume(user_id, Operation(complexity="standard"))

    audit = await services.ledger.verify_balance(user_id)

    assert audit.consistent
    assert audit.balance == 9
