"""
Weekly send policy per subscription tier.

Free users get no scheduled digest; premium users get three sends a week.
Every helper is pure: the current date is taken as an argument and only
defaults to today.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field

from jobmatch.models.models import SendLedgerEntry, Tier
from jobmatch.utils.exceptions import ValidationError

WEEKDAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


class TierSendConfig(BaseModel):
    send_days: List[str] = Field(default_factory=list)
    jobs_per_send: int = Field(default=5, ge=0)
    sends_per_week: int = Field(default=0, ge=0)
    signup_bonus: int = Field(default=0, ge=0)
    early_access_hours: int = Field(default=0, ge=0)


class MatchRules(BaseModel):
    min_score: float = Field(default=65, ge=0, le=100, description="Minimum match score to qualify")
    lookback_days: int = Field(default=30, ge=1, description="Only jobs newer than this are considered")
    max_per_company: int = Field(default=2, ge=1, description="Max jobs from one company in one send")
    max_per_source: int = Field(default=40, ge=1, description="Max jobs from one source in the ranked pool")


DEFAULT_TIERS = {
    Tier.FREE: TierSendConfig(send_days=[], jobs_per_send=5, sends_per_week=0, signup_bonus=0),
    Tier.PREMIUM: TierSendConfig(
        send_days=["Mon", "Wed", "Fri"],
        jobs_per_send=5,
        sends_per_week=3,
        signup_bonus=10,
        early_access_hours=24,
    ),
}


def _as_date(value: Union[date, datetime, None]) -> date:
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    return value


class SendConfiguration:
    """Tier policy values plus the small helpers the scheduler relies on."""

    def __init__(self, tiers: Optional[Dict[Tier, TierSendConfig]] = None, rules: Optional[MatchRules] = None):
        self.tiers = dict(tiers or DEFAULT_TIERS)
        self.rules = rules or MatchRules()

    def tier_config(self, tier: Union[Tier, str]) -> TierSendConfig:
        try:
            return self.tiers[Tier(tier)]
        except (ValueError, KeyError) as e:
            raise ValidationError(f"Unknown subscription tier: {tier}", field="tier", value=tier, cause=e) from e

    def jobs_per_send(self, tier: Union[Tier, str]) -> int:
        return self.tier_config(tier).jobs_per_send

    def signup_bonus_jobs(self, tier: Union[Tier, str]) -> int:
        return self.tier_config(tier).signup_bonus

    def can_user_receive_send(self, ledger: Optional[SendLedgerEntry], current_week: str, tier: Union[Tier, str]) -> bool:
        """A new week resets the allowance; otherwise sends_used must be under the cap."""
        config = self.tier_config(tier)
        if ledger is None or ledger.week_start != current_week:
            return True
        return ledger.sends_used < config.sends_per_week

    def should_skip_send(self, eligible_jobs: Sequence, tier: Union[Tier, str]) -> bool:
        return len(eligible_jobs) < self.jobs_per_send(tier)

    def is_send_day(self, tier: Union[Tier, str], day: Union[date, datetime, None] = None) -> bool:
        config = self.tier_config(tier)
        if not config.send_days:
            return False
        return WEEKDAY_NAMES[_as_date(day).weekday()] in config.send_days

    @staticmethod
    def get_current_week_start(today: Union[date, datetime, None] = None) -> str:
        current = _as_date(today)
        return (current - timedelta(days=current.weekday())).isoformat()

    def early_access_cutoff(self, tier: Union[Tier, str] = Tier.PREMIUM, now: Optional[datetime] = None) -> datetime:
        """Jobs ingested after this instant are held back from tiers without early access."""
        now = now or datetime.now(timezone.utc)
        return now - timedelta(hours=self.tier_config(tier).early_access_hours)

    def lookback_start(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=self.rules.lookback_days)

    def record_send(
        self,
        ledger: Optional[SendLedgerEntry],
        user_id: str,
        tier: Union[Tier, str],
        jobs_sent: int,
        today: Union[date, datetime, None] = None,
    ) -> SendLedgerEntry:
        """Return the ledger entry after one more send, rolling over on a new week."""
        current = _as_date(today)
        week = self.get_current_week_start(current)
        if not self.can_user_receive_send(ledger, week, tier):
            raise ValidationError(
                f"Weekly send allowance exhausted for user {user_id}",
                field="sends_used",
                value=ledger.sends_used,
            )
        if ledger is None or ledger.week_start != week:
            sends_used, total_sent = 0, 0
        else:
            sends_used, total_sent = ledger.sends_used, ledger.jobs_sent
        return SendLedgerEntry(
            user_id=user_id,
            week_start=week,
            tier=Tier(tier),
            sends_used=sends_used + 1,
            jobs_sent=total_sent + jobs_sent,
            last_send_date=current.isoformat(),
        )

    def describe(self) -> dict:
        return {
            "tiers": {tier.value: cfg.model_dump() for tier, cfg in self.tiers.items()},
            "match_rules": self.rules.model_dump(),
        }
