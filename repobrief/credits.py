# repobrief/credits.py

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from repobrief.errors import InsufficientCreditsError, UserNotFoundError
from repobrief.models import CreditTransaction, User

logger = logging.getLogger(__name__)


def get_user(session, user_id: str) -> User:
    user = session.query(User).filter(User.id == user_id).first()
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


def ensure_user(session, user_id: str, email: Optional[str] = None, first_name: Optional[str] = None,
                last_name: Optional[str] = None, image_url: Optional[str] = None) -> User:
    """Mirror a user from the identity provider. New users get the default credit balance."""
    user = session.query(User).filter(User.id == user_id).first()
    if user is None:
        user = User(id=user_id)
        session.add(user)
        logger.info(f"[CREDITS] Created user {user_id}")

    user.email = email or user.email
    user.first_name = first_name or user.first_name
    user.last_name = last_name or user.last_name
    user.image_url = image_url or user.image_url
    session.commit()
    return user


def get_balance(session, user_id: str) -> int:
    user = get_user(session, user_id)
    session.refresh(user)
    return user.credits


def check_user_credits(session, user_id: str, required: int) -> dict:
    current = get_balance(session, user_id)
    return {
        "has_enough_credits": current >= required,
        "current_credits": current,
        "required_credits": required,
    }


def deduct_credits(session, user_id: str, amount: int, commit: bool = True) -> int:
    """
    Take `amount` credits from a user and record it in the ledger.

    The balance check and the decrement are one UPDATE guarded by
    `credits >= amount`, so two concurrent deductions cannot take the
    balance below zero.
    """
    if amount < 0:
        raise ValueError("Credit amount must not be negative")

    result = session.execute(
        update(User)
        .where(User.id == user_id, User.credits >= amount)
        .values(credits=User.credits - amount)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        user = get_user(session, user_id)
        session.refresh(user)
        raise InsufficientCreditsError(required=amount, available=user.credits)

    session.add(CreditTransaction(user_id=user_id, credits=-amount))
    if commit:
        session.commit()

    logger.info(f"[CREDITS] Deducted {amount} credits from user {user_id}")
    return get_balance(session, user_id)


def add_credits(session, user_id: str, amount: int, event_id: Optional[str] = None) -> int:
    """Credit a purchase. A given `event_id` is only ever credited once."""
    if amount <= 0:
        raise ValueError("Credit amount must be positive")

    if event_id and session.query(CreditTransaction).filter(CreditTransaction.event_id == event_id).first():
        logger.info(f"[CREDITS] Event {event_id} already credited, skipping")
        return get_balance(session, user_id)

    get_user(session, user_id)
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(credits=User.credits + amount)
        .execution_options(synchronize_session=False)
    )
    session.add(CreditTransaction(user_id=user_id, credits=amount, event_id=event_id))

    try:
        session.commit()
    except IntegrityError:
        # Another request credited the same event first
        session.rollback()
        logger.info(f"[CREDITS] Event {event_id} already credited, skipping")
    else:
        logger.info(f"[CREDITS] Added {amount} credits to user {user_id}")

    return get_balance(session, user_id)
