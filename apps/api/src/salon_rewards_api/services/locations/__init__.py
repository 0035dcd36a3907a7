"""Location and organization lookups."""

from .resolver import OrganizationResolver

__all__ = ["OrganizationResolver"]
