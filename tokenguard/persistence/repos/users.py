from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import random
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Executable

from tokenguard.core.errors import ConcurrencyConflict, DatabaseError
from tokenguard.domain.models import TokenTransaction, User


logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_DECLINED = "declined"
OUTCOME_NOOP = "noop"
OUTCOME_NOT_FOUND = "not_found"

_DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class Decline:
    # Business refusal computed from the current user row; nothing is written.
    reason: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class UserMutation:
    # Column values for the users row plus rows written in the same transaction.
    values: dict[str, Any]
    entries: list[TokenTransaction] = field(default_factory=list)
    rows: list[Any] = field(default_factory=list)
    # Statements that must each affect exactly one row after the user update succeeds.
    guards: list[Executable] = field(default_factory=list)
    result: Any = None


@dataclass
class MutationOutcome:
    status: str
    user: User | None
    decline: Decline | None = None
    entries: list[TokenTransaction] = field(default_factory=list)
    result: Any = None
    attempts: int = 1

    @property
    def applied(self) -> bool:
        return self.status == OUTCOME_APPLIED


MutateFn = Callable[[User, AsyncSession], Awaitable["UserMutation | Decline | None"]]


async def load_user(session: AsyncSession, user_id: str) -> User | None:
    # Always refresh from the database so retries never see a cached identity-map row.
    result = await session.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def apply_user_mutation(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
    mutate: MutateFn,
    *,
    max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
) -> MutationOutcome:
    """Apply one serialized state transition to a single user.

    Every write to a user's balance or account state goes through here. Each
    attempt reads the row, asks ``mutate`` for the change, and writes it with
    a compare-and-set on ``balance_version`` in one transaction together with
    any ledger entries and related rows. A lost race re-reads and re-runs
    ``mutate`` so decisions are always made against the committed state.

    ``mutate`` receives a detached user snapshot and must express changes
    through the returned ``UserMutation``; returning a ``Decline`` or ``None``
    ends the call without writing.

    ``IntegrityError`` is propagated unchanged so callers can treat unique
    reference collisions as duplicates.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        async with session_factory() as session:
            try:
                user = await load_user(session, user_id)
                if user is None:
                    return MutationOutcome(status=OUTCOME_NOT_FOUND, user=None, attempts=attempt)
                # Detach so attribute writes inside mutate can never flush around the CAS.
                session.expunge(user)
                change = await mutate(user, session)
                if change is None:
                    await session.rollback()
                    return MutationOutcome(status=OUTCOME_NOOP, user=user, attempts=attempt)
                if isinstance(change, Decline):
                    await session.rollback()
                    return MutationOutcome(
                        status=OUTCOME_DECLINED, user=user, decline=change, attempts=attempt
                    )

                expected_version = user.balance_version
                values = dict(change.values)
                values["balance_version"] = expected_version + 1
                result = await session.execute(
                    update(User)
                    .where(User.id == user_id, User.balance_version == expected_version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if (result.rowcount or 0) != 1:
                    await session.rollback()
                    logger.debug(
                        "user_cas_conflict user_id=%s attempt=%s version=%s",
                        user_id,
                        attempt,
                        expected_version,
                    )
                    await asyncio.sleep(random.uniform(0, 0.005 * attempt))
                    continue

                for guard in change.guards:
                    guard_result = await session.execute(
                        guard.execution_options(synchronize_session=False)
                    )
                    if (guard_result.rowcount or 0) != 1:
                        # Another writer already applied the guarded transition.
                        await session.rollback()
                        return MutationOutcome(status=OUTCOME_NOOP, user=user, attempts=attempt)

                for entry in change.entries:
                    session.add(entry)
                for row in change.rows:
                    session.add(row)
                await session.commit()
            except IntegrityError:
                raise
            except SQLAlchemyError as exc:
                raise DatabaseError(f"User mutation failed for {user_id}") from exc

        for key, value in values.items():
            setattr(user, key, value)
        return MutationOutcome(
            status=OUTCOME_APPLIED,
            user=user,
            entries=list(change.entries),
            result=change.result,
            attempts=attempt,
        )

    logger.warning("user_cas_exhausted user_id=%s attempts=%s", user_id, attempts)
    raise ConcurrencyConflict(f"Could not serialize update for user {user_id}")
