"""Customer mirror services."""

from .service import CustomerProfile, CustomerService, ReferralIdentity, clean_value

__all__ = ["CustomerProfile", "CustomerService", "ReferralIdentity", "clean_value"]
