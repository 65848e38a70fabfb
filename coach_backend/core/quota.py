"""Plan-based daily message quota.

FREE users get FREE_DAILY_MESSAGES per UTC day, PRO users are unlimited.
Guests are not tracked here; their quota lives in the client session.

A send reserves its slot up front with reserve_message and hands it back
with release_message when the exchange fails, so the counter only ever
reflects messages that were answered.
"""

import os

import structlog

from coach_backend.api.schemas import PlanStatus
from coach_backend.core.database import get_daily_usage, release_message_slot, reserve_message_slot
from coach_backend.core.errors import MessageLimitError

logger = structlog.get_logger(__name__)


def daily_limit_for(plan: str) -> int | None:
    """Daily message allowance for a plan, None meaning unlimited."""
    if plan == "PRO":
        return None
    return int(os.environ.get("FREE_DAILY_MESSAGES", "10"))


def get_plan_status(user_id: str) -> PlanStatus:
    """Current plan, usage and remaining allowance for a user."""
    plan, used = get_daily_usage(user_id)
    limit = daily_limit_for(plan)
    remaining = None if limit is None else max(limit - used, 0)
    return PlanStatus(
        plan=plan,
        daily_limit=limit,
        messages_used_today=used,
        messages_remaining=remaining,
        can_send_message=remaining is None or remaining > 0,
    )


def reserve_message(user_id: str) -> None:
    """Take one of today's slots, raising MessageLimitError when none is left."""
    limit = daily_limit_for("FREE")
    if not reserve_message_slot(user_id, limit):
        logger.info("quota.exhausted", user_id=user_id, limit=limit)
        raise MessageLimitError(limit, context={"user_id": user_id})
    logger.debug("quota.reserved", user_id=user_id)


def release_message(user_id: str) -> None:
    """Return a reserved slot after the exchange failed."""
    release_message_slot(user_id)
    logger.debug("quota.released", user_id=user_id)
