from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Request

from jobmatch.models.models import SendLedgerEntry, Tier
from jobmatch.models.schemas import EligibilityResponse
from jobmatch.services.db import send_ledger_coll, users_coll
from jobmatch.services.dependencies import get_send_config
from jobmatch.services.send_configuration import SendConfiguration
from jobmatch.utils.exceptions import ExceptionContext, NotFoundError
from jobmatch.utils.logging_config import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("")
async def send_policy(config: SendConfiguration = Depends(get_send_config)):
    """Tier cadence and match rules used by the delivery scheduler"""
    return config.describe()


@router.get("/users/{user_id}/eligibility", response_model=EligibilityResponse)
async def send_eligibility(
    user_id: str,
    request: Request,
    on: Optional[date] = None,
    config: SendConfiguration = Depends(get_send_config),
):
    """Whether a user may receive a send today given this week's ledger"""
    request_id = getattr(request.state, 'request_id', 'unknown')
    today = on or date.today()

    with ExceptionContext("send_eligibility", logger, request_id=request_id, user_id=user_id):
        user = await users_coll.find_one({"user_id": user_id}, {"_id": 0, "subscription_tier": 1})
        if not user:
            raise NotFoundError(f"User not found: {user_id}", resource="user", identifier=user_id)
        tier = Tier(user.get("subscription_tier") or Tier.FREE)

        week_start = config.get_current_week_start(today)
        ledger_doc = await send_ledger_coll.find_one({"user_id": user_id, "week_start": week_start}, {"_id": 0})
        ledger = SendLedgerEntry(**ledger_doc) if ledger_doc else None

    tier_config = config.tier_config(tier)
    return EligibilityResponse(
        user_id=user_id,
        tier=tier,
        week_start=week_start,
        can_receive_send=config.can_user_receive_send(ledger, week_start, tier),
        is_send_day=config.is_send_day(tier, today),
        jobs_per_send=tier_config.jobs_per_send,
        sends_used=ledger.sends_used if ledger else 0,
        sends_per_week=tier_config.sends_per_week,
    )
