"""Referral reward and profile persistence."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_rewards_api.models.gift_card import GiftCard
from salon_rewards_api.models.referral import (
    ReferralProfile,
    ReferralReward,
    ReferralRewardStatus,
    ReferralRewardType,
)

_PROFILE_FIELDS = {"personal_code", "referral_url", "used_referral_code"}


class ReferralLedger:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def has_reward(
        self,
        referrer_customer_id: str,
        referred_customer_id: str,
        reward_type: ReferralRewardType = ReferralRewardType.REFERRER_REWARD,
    ) -> bool:
        result = await self._db.execute(
            select(ReferralReward.id)
            .where(
                ReferralReward.referrer_customer_id == referrer_customer_id,
                ReferralReward.referred_customer_id == referred_customer_id,
                ReferralReward.reward_type == reward_type,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def record_reward(
        self,
        *,
        referrer_customer_id: str,
        referred_customer_id: str,
        amount_cents: int,
        reward_type: ReferralRewardType,
        square_gift_card_id: str | None = None,
        payment_id: str | None = None,
        booking_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReferralReward | None:
        """Insert a PAID reward row; failures are logged and return ``None``."""

        try:
            gift_card_pk = None
            if square_gift_card_id:
                card = await self._db.execute(
                    select(GiftCard.id).where(GiftCard.square_gift_card_id == square_gift_card_id)
                )
                gift_card_pk = card.scalar_one_or_none()
            reward = ReferralReward(
                referrer_customer_id=referrer_customer_id,
                referred_customer_id=referred_customer_id,
                reward_amount_cents=amount_cents,
                status=ReferralRewardStatus.PAID,
                reward_type=reward_type,
                gift_card_id=gift_card_pk,
                payment_id=payment_id,
                booking_id=booking_id,
                paid_at=datetime.now(timezone.utc),
                metadata_json=metadata,
            )
            self._db.add(reward)
            await self._db.commit()
            return reward
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.warning(
                "Failed to record referral reward",
                referrer_id=referrer_customer_id,
                referred_id=referred_customer_id,
                error=str(exc),
            )
            return None

    async def upsert_profile(self, square_customer_id: str, **fields: Any) -> ReferralProfile | None:
        """Mirror referral identity into ``referral_profiles``; conflicts are logged, not raised."""

        values = {key: value for key, value in fields.items() if key in _PROFILE_FIELDS and value is not None}
        try:
            result = await self._db.execute(
                select(ReferralProfile).where(ReferralProfile.square_customer_id == square_customer_id)
            )
            profile = result.scalar_one_or_none()
            if profile is None:
                profile = ReferralProfile(square_customer_id=square_customer_id, **values)
                self._db.add(profile)
            else:
                for key, value in values.items():
                    setattr(profile, key, value)
            await self._db.commit()
            return profile
        except IntegrityError as exc:
            await self._db.rollback()
            logger.warning("Referral profile update conflicted", customer_id=square_customer_id, error=str(exc.orig))
            return None


__all__ = ["ReferralLedger"]
