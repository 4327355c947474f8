"""
Holding and user profile management.

Every change to a user's positions alters exposures, so each write is
committed and followed by a ``recompute_user_impacts`` job for that user.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from signalcopilot.db.models import Holding, UserProfile
from signalcopilot.db.repositories import HoldingRepository, UserProfileRepository
from signalcopilot.domain.models import HoldingInput, HoldingIntent, RiskProfile
from signalcopilot.log_config import logger
from signalcopilot.utils.errors import ValidationError

RECOMPUTE_USER_IMPACTS = "recompute_user_impacts"


def _enum_value(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {enum_cls.__name__}: {value}", details={"value": str(value)}) from e


class HoldingService:
    """CRUD for holdings that keeps impacts in step via the task queue."""

    def __init__(self, db: Session, queue=None):
        self.db = db
        self.queue = queue
        self.holdings = HoldingRepository(db)
        self.profiles = UserProfileRepository(db)

    def _schedule_recompute(self, user_id: int) -> None:
        if self.queue is None:
            return
        self.queue.submit(RECOMPUTE_USER_IMPACTS, {"user_id": user_id})

    def list_holdings(self, user_id: int) -> List[Holding]:
        return self.holdings.get_for_user(user_id)

    def add_holding(
        self,
        user_id: int,
        ticker: str,
        shares: float,
        cost_basis: Optional[float] = None,
        acquired_at: Optional[datetime] = None,
        intent: HoldingIntent = HoldingIntent.HOLD,
    ) -> Holding:
        """
        Add a position.

        Raises:
            ValidationError: If the payload is invalid
            DuplicateRecordError: If the user already holds ``ticker``
        """
        try:
            holding_input = HoldingInput(
                ticker=ticker,
                shares=shares,
                cost_basis=cost_basis,
                acquired_at=acquired_at,
                intent=intent,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid holding payload",
                details={"errors": e.errors(include_url=False), "ticker": ticker},
            ) from e

        holding = self.holdings.create(user_id, holding_input)
        self.db.commit()
        logger.info(f"Added holding {holding.ticker} for user {user_id}")
        self._schedule_recompute(user_id)
        return holding

    def update_holding(
        self,
        holding_id: int,
        shares: Optional[float] = None,
        cost_basis: Optional[float] = None,
        intent: Optional[HoldingIntent] = None,
    ) -> Holding:
        changes = {}
        if shares is not None:
            if shares < 0:
                raise ValidationError("Shares cannot be negative", details={"shares": shares})
            changes["shares"] = shares
        if cost_basis is not None:
            if cost_basis < 0:
                raise ValidationError("Cost basis cannot be negative", details={"cost_basis": cost_basis})
            changes["cost_basis"] = cost_basis
        if intent is not None:
            changes["intent"] = _enum_value(HoldingIntent, intent)

        holding = self.holdings.update(holding_id, **changes)
        self.db.commit()
        logger.info(f"Updated holding {holding_id} ({holding.ticker}) for user {holding.user_id}")
        self._schedule_recompute(holding.user_id)
        return holding

    def remove_holding(self, holding_id: int) -> None:
        holding = self.holdings.get_required(holding_id)
        user_id, ticker = holding.user_id, holding.ticker
        self.holdings.delete(holding_id)
        self.db.commit()
        logger.info(f"Removed holding {ticker} for user {user_id}")
        self._schedule_recompute(user_id)

    def update_profile(
        self,
        user_id: int,
        risk_profile: Optional[RiskProfile] = None,
        cash_buffer: Optional[float] = None,
    ) -> UserProfile:
        if risk_profile is not None:
            risk_profile = _enum_value(RiskProfile, risk_profile)
        if cash_buffer is not None and cash_buffer < 0:
            raise ValidationError("Cash buffer cannot be negative", details={"user_id": user_id})
        profile = self.profiles.save(user_id, risk_profile=risk_profile, cash_buffer=cash_buffer)
        self.db.commit()
        return profile
