"""Persistence for the ``square_existing_clients`` customer mirror."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.services.referrals.codes import build_referral_url, generate_unique_personal_code
from salon_rewards_api.services.referrals.ledger import ReferralLedger

_PROFILE_KEYS: dict[str, tuple[str, ...]] = {
    "given_name": ("given_name", "givenName", "first_name", "firstName"),
    "family_name": ("family_name", "familyName", "last_name", "lastName"),
    "email_address": ("email_address", "emailAddress", "email"),
    "phone_number": ("phone_number", "phoneNumber", "phone"),
}


def clean_value(value: Any) -> str | None:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


@dataclass(slots=True)
class CustomerProfile:
    customer_id: str
    given_name: str | None = None
    family_name: str | None = None
    email_address: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_payload(cls, customer_id: str, payload: Mapping[str, Any] | None) -> "CustomerProfile":
        payload = payload or {}
        values = {}
        for field, keys in _PROFILE_KEYS.items():
            values[field] = next((clean_value(payload.get(key)) for key in keys if clean_value(payload.get(key))), None)
        return cls(customer_id=customer_id, **values)

    @property
    def is_complete(self) -> bool:
        return all((self.given_name, self.family_name, self.email_address, self.phone_number))

    @property
    def display_name(self) -> str:
        return f"{self.given_name or ''} {self.family_name or ''}".strip()

    def merge(self, other: "CustomerProfile") -> "CustomerProfile":
        """Keep known values and fill gaps from ``other``."""

        return CustomerProfile(
            customer_id=self.customer_id,
            given_name=self.given_name or other.given_name,
            family_name=self.family_name or other.family_name,
            email_address=self.email_address or other.email_address,
            phone_number=self.phone_number or other.phone_number,
        )


@dataclass(slots=True)
class ReferralIdentity:
    personal_code: str | None
    referral_url: str | None
    conflicted: bool = False


class CustomerService:
    """Reads and writes customer rows; every write commits."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def get(self, customer_id: str) -> SquareCustomer | None:
        result = await self._db.execute(
            select(SquareCustomer)
            .where(SquareCustomer.square_customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_profile(
        self,
        profile: CustomerProfile,
        *,
        organization_id: str | None = None,
    ) -> SquareCustomer:
        """Insert the customer or fill only the columns that are still empty."""

        customer = await self.get(profile.customer_id)
        if customer is None:
            customer = SquareCustomer(
                square_customer_id=profile.customer_id,
                organization_id=organization_id,
                given_name=profile.given_name,
                family_name=profile.family_name,
                email_address=profile.email_address,
                phone_number=profile.phone_number,
            )
            self._db.add(customer)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                logger.warning("Detected race when creating customer", customer_id=profile.customer_id)
                return await self.upsert_profile(profile, organization_id=organization_id)
            return customer

        customer.given_name = customer.given_name or profile.given_name
        customer.family_name = customer.family_name or profile.family_name
        customer.email_address = customer.email_address or profile.email_address
        customer.phone_number = customer.phone_number or profile.phone_number
        customer.organization_id = customer.organization_id or organization_id
        await self._db.commit()
        return customer

    async def update_fields(self, customer_id: str, **fields: Any) -> None:
        if not fields:
            return
        await self._db.execute(
            update(SquareCustomer)
            .where(SquareCustomer.square_customer_id == customer_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

    async def record_referral_credit(self, referrer_id: str, amount_cents: int, **gift_card_fields: Any) -> None:
        """Increment referral counters atomically and refresh the gift card projection."""

        values: dict[str, Any] = {
            "total_referrals": SquareCustomer.total_referrals + 1,
            "total_rewards_cents": SquareCustomer.total_rewards_cents + amount_cents,
        }
        values.update({key: value for key, value in gift_card_fields.items() if value is not None})
        await self.update_fields(referrer_id, **values)

    async def assign_referral_identity(
        self,
        customer: SquareCustomer,
        *,
        customer_name: str | None = None,
        extra_fields: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> ReferralIdentity:
        """Persist a personal code and referral URL for ``customer``.

        The existing code is reused. A unique-constraint conflict regenerates the
        code and retries up to ``max_retries`` times; after that the other fields
        are stored without a code and a manual-intervention warning is logged.
        """

        retries = max_retries if max_retries is not None else settings.referral_profile_conflict_retries
        customer_id = customer.square_customer_id
        name = customer_name or customer.display_name or "Customer"
        code = customer.personal_code or await generate_unique_personal_code(self._db, name, customer_id)
        fields = dict(extra_fields or {})

        for attempt in range(retries + 1):
            url = build_referral_url(code)
            try:
                await self.update_fields(customer_id, personal_code=code, referral_url=url, **fields)
            except IntegrityError:
                await self._db.rollback()
                logger.warning(
                    "Personal code was taken concurrently; regenerating",
                    customer_id=customer_id,
                    attempt=attempt + 1,
                )
                code = await generate_unique_personal_code(self._db, name, customer_id)
                continue
            await ReferralLedger(self._db).upsert_profile(customer_id, personal_code=code, referral_url=url)
            return ReferralIdentity(personal_code=code, referral_url=url)

        logger.warning(
            "Failed to store personal code; manual code assignment required",
            customer_id=customer_id,
        )
        if fields:
            await self.update_fields(customer_id, **fields)
        return ReferralIdentity(personal_code=None, referral_url=None, conflicted=True)


__all__ = [
    "CustomerProfile",
    "CustomerService",
    "ReferralIdentity",
    "clean_value",
]
