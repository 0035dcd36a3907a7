"""Resolve the owning organization for Square locations, merchants and customers."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_rewards_api.core.settings import settings
from salon_rewards_api.models.customer import SquareCustomer
from salon_rewards_api.models.location import Location
from salon_rewards_api.services.square.client import SquareAPIError, SquareClient


class OrganizationResolver:
    """Location first (local row, then Square lookup), merchant next, customer last."""

    def __init__(
        self,
        session: AsyncSession,
        square: SquareClient,
        *,
        default_organization_id: str | None = None,
    ) -> None:
        self._db = session
        self._square = square
        self._default_organization_id = (
            default_organization_id if default_organization_id is not None else settings.default_organization_id
        )

    async def resolve(
        self,
        *,
        location_id: str | None = None,
        merchant_id: str | None = None,
        customer_id: str | None = None,
    ) -> str | None:
        organization_id: str | None = None
        if location_id:
            organization_id = await self.from_location(location_id)
        if not organization_id and merchant_id:
            organization_id = await self.from_merchant(merchant_id)
        if not organization_id and customer_id:
            organization_id = await self.from_customer(customer_id)
        if not organization_id and self._default_organization_id:
            organization_id = self._default_organization_id
        if organization_id and location_id:
            await self._remember_location(location_id, organization_id=organization_id, merchant_id=merchant_id)
        return organization_id

    async def from_location(self, location_id: str) -> str | None:
        location = await self._location(location_id)
        if location is not None and location.organization_id:
            return location.organization_id
        merchant_id = location.square_merchant_id if location is not None else None
        if not merchant_id:
            try:
                square_location = await self._square.retrieve_location(location_id)
            except SquareAPIError as exc:
                logger.warning("Unable to fetch location from Square", location_id=location_id, error=str(exc))
                return None
            merchant_id = square_location.get("merchant_id")
            if merchant_id:
                await self._remember_location(
                    location_id, merchant_id=merchant_id, name=square_location.get("name")
                )
        if merchant_id:
            return await self.from_merchant(merchant_id)
        return None

    async def from_merchant(self, merchant_id: str) -> str | None:
        result = await self._db.execute(
            select(Location.organization_id)
            .where(Location.square_merchant_id == merchant_id, Location.organization_id.is_not(None))
            .limit(1)
        )
        organization_id = result.scalar_one_or_none()
        if organization_id is None:
            logger.info("No organization mapped to merchant", merchant_id=merchant_id)
        return organization_id

    async def from_customer(self, customer_id: str) -> str | None:
        result = await self._db.execute(
            select(SquareCustomer.organization_id).where(SquareCustomer.square_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def _location(self, location_id: str) -> Location | None:
        result = await self._db.execute(select(Location).where(Location.square_location_id == location_id))
        return result.scalar_one_or_none()

    async def _remember_location(
        self,
        location_id: str,
        *,
        organization_id: str | None = None,
        merchant_id: str | None = None,
        name: str | None = None,
    ) -> None:
        location = await self._location(location_id)
        if location is None:
            self._db.add(
                Location(
                    square_location_id=location_id,
                    organization_id=organization_id,
                    square_merchant_id=merchant_id,
                    name=name or f"Location {location_id[:8]}",
                )
            )
        else:
            location.organization_id = location.organization_id or organization_id
            location.square_merchant_id = merchant_id or location.square_merchant_id
            location.name = location.name or name
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            logger.info("Location already recorded by a concurrent request", location_id=location_id)


__all__ = ["OrganizationResolver"]
