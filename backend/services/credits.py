"""
Credit ledger for staging usage.

- reserve / refund for staging jobs
- grant / grant_trial_credits for purchases and trial bonuses
- get_balance / list_transactions / verify_balance for reads and audits

Every balance change is a single conditional UPDATE paired with a
credit_transactions row, so concurrent reservations can never drive the
balance negative and the balance always equals the sum of the log.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from config import settings
from models.credit_transaction import CreditTransaction, CreditTransactionType
from services.errors import InsufficientCredits, InvalidInput, NotFound
from services.staging_store import StagingStore

logger = logging.getLogger(__name__)


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise InvalidInput(f"Credit amount must be positive, got {amount}")


async def get_balance(store: StagingStore, user_id: str) -> int:
    """Return the user's current credits (0 for an unknown user)."""
    user = await store.get_user(user_id)
    if user is None:
        return 0
    return int(user.credits)


async def reserve(
    store: StagingStore,
    user_id: str,
    amount: int,
    job_id: str,
    description: Optional[str] = None,
) -> int:
    """
    Debit ``amount`` credits for a job. Returns the new balance.

    Raises InsufficientCredits if the balance does not cover it; nothing is
    written in that case.
    """
    _require_positive(amount)
    new_balance = await store.apply_credit_change(
        user_id,
        -amount,
        CreditTransactionType.USAGE,
        description or f"Virtual staging for {amount} image(s)",
        related_job_id=job_id,
    )
    if new_balance is None:
        user = await store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        logger.info(
            "[Credits] reserve: user %s insufficient balance %d < %d",
            user_id, user.credits, amount,
        )
        raise InsufficientCredits(required=amount, available=int(user.credits))
    logger.info(
        "[Credits] Reserved %d credits for job %s (user %s, balance %d)",
        amount, job_id, user_id, new_balance,
    )
    return new_balance


async def refund(
    store: StagingStore,
    user_id: str,
    amount: int,
    job_id: str,
    reason: str,
) -> int:
    """Return ``amount`` credits for a job. Callers guarantee one refund per job."""
    _require_positive(amount)
    new_balance = await store.apply_credit_change(
        user_id,
        amount,
        CreditTransactionType.REFUND,
        f"Refund: {reason}",
        related_job_id=job_id,
    )
    if new_balance is None:
        raise NotFound("User not found")
    logger.info(
        "[Credits] Refunded %d credits for job %s (user %s, balance %d): %s",
        amount, job_id, user_id, new_balance, reason,
    )
    return new_balance


async def grant(
    store: StagingStore,
    user_id: str,
    amount: int,
    tx_type: CreditTransactionType = CreditTransactionType.PURCHASE,
    description: str = "Credit purchase",
) -> int:
    """Add purchased or bonus credits."""
    _require_positive(amount)
    if tx_type not in (CreditTransactionType.PURCHASE, CreditTransactionType.BONUS):
        raise InvalidInput(f"Cannot grant credits as {tx_type.value}")
    new_balance = await store.apply_credit_change(user_id, amount, tx_type, description)
    if new_balance is None:
        raise NotFound("User not found")
    logger.info("[Credits] Granted %d %s credits to user %s", amount, tx_type.value, user_id)
    return new_balance


async def grant_trial_credits(store: StagingStore, user_id: str) -> int:
    """Give a new user the configured trial bonus."""
    return await grant(
        store, user_id, settings.TRIAL_CREDITS, CreditTransactionType.BONUS, "Trial credits",
    )


async def list_transactions(
    store: StagingStore, user_id: str, limit: int = 50
) -> list[CreditTransaction]:
    """Most recent first."""
    return await store.list_transactions(user_id, limit=limit)


def replay_balance(transactions: Iterable[CreditTransaction]) -> int:
    """Balance implied by a transaction log starting from zero."""
    return sum(int(tx.amount) for tx in transactions)


async def verify_balance(store: StagingStore, user_id: str) -> bool:
    """True if the stored balance equals the replayed transaction log."""
    user = await store.get_user(user_id)
    if user is None:
        raise NotFound("User not found")
    transactions = await store.list_transactions(user_id, limit=1_000_000)
    replayed = replay_balance(transactions)
    if replayed != user.credits:
        logger.error(
            "[Credits] Balance mismatch for user %s: stored %d, replayed %d",
            user_id, user.credits, replayed,
        )
        return False
    return True
