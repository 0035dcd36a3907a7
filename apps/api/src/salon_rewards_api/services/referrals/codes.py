"""Personal referral code generation and referrer lookup."""

from __future__ import annotations

import re
import secrets
import time

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.models.referral import ReferralProfile

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_DIGITS = re.compile(r"\d+")


def _name_part(customer_name: str | None, limit: int) -> str:
    if not customer_name:
        return "CUST"
    first = str(customer_name).strip().split(" ")[0]
    return _NON_ALNUM.sub("", first).upper()[:limit] or "CUST"


def generate_personal_code(customer_name: str | None, customer_id: str | None) -> str:
    """``NAME`` (first word, max 10 chars) followed by the last four digits of the customer id."""

    name_part = _name_part(customer_name, 10)
    if customer_id:
        digits = "".join(_DIGITS.findall(str(customer_id)))
        id_part = digits[-4:].zfill(4) if digits else str(customer_id)[-4:].upper()
    else:
        id_part = str(int(time.time() * 1000))[-4:]
    if len(id_part) < 3:
        id_part = id_part.zfill(4)
    return f"{name_part}{id_part[-4:]}"


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def build_referral_url(code: str, base_url: str | None = None) -> str:
    base = (base_url or settings.referral_base_url).rstrip("/")
    return f"{base}/{code}"


async def personal_code_taken(db: AsyncSession, code: str) -> bool:
    normalized = normalize_code(code)
    customer = await db.execute(
        select(SquareCustomer.id).where(func.upper(SquareCustomer.personal_code) == normalized).limit(1)
    )
    if customer.scalar_one_or_none() is not None:
        return True
    profile = await db.execute(
        select(ReferralProfile.id).where(func.upper(ReferralProfile.personal_code) == normalized).limit(1)
    )
    return profile.scalar_one_or_none() is not None


async def generate_unique_personal_code(
    db: AsyncSession,
    customer_name: str | None,
    customer_id: str | None,
    *,
    max_attempts: int | None = None,
) -> str:
    """Return a code unused by any customer or referral profile.

    Attempts after the first replace the last two characters with a two digit
    counter. When every attempt collides a random four digit suffix is used.
    """

    attempts = max_attempts if max_attempts is not None else settings.referral_code_max_attempts
    base_code = generate_personal_code(customer_name, customer_id)
    for attempt in range(attempts):
        candidate = base_code if attempt == 0 else f"{base_code[:-2]}{attempt:02d}"
        if not await personal_code_taken(db, candidate):
            return candidate
    fallback = f"{_name_part(customer_name, 6)}{secrets.randbelow(10000):04d}"
    logger.warning("Personal code attempts exhausted; using random suffix", customer_id=customer_id)
    return fallback


async def find_referrer_by_code(
    db: AsyncSession,
    referral_code: str | None,
    *,
    organization_id: str | None = None,
) -> SquareCustomer | None:
    """Match ``referral_code`` case-insensitively against stored personal codes."""

    normalized = normalize_code(referral_code)
    if not normalized:
        return None

    stmt = select(SquareCustomer).where(func.upper(func.trim(SquareCustomer.personal_code)) == normalized)
    if organization_id:
        stmt = stmt.where(
            or_(SquareCustomer.organization_id == organization_id, SquareCustomer.organization_id.is_(None))
        )
    result = await db.execute(stmt.limit(1))
    referrer = result.scalar_one_or_none()
    if referrer is not None:
        return referrer

    profile_result = await db.execute(
        select(ReferralProfile.square_customer_id)
        .where(func.upper(func.trim(ReferralProfile.personal_code)) == normalized)
        .limit(1)
    )
    customer_id = profile_result.scalar_one_or_none()
    if customer_id is None:
        return None
    customer_result = await db.execute(
        select(SquareCustomer).where(SquareCustomer.square_customer_id == customer_id)
    )
    return customer_result.scalar_one_or_none()


__all__ = [
    "build_referral_url",
    "find_referrer_by_code",
    "generate_personal_code",
    "generate_unique_personal_code",
    "normalize_code",
    "personal_code_taken",
]
