"""Referral code generation, detection and reward bookkeeping."""

from .codes import (
    build_referral_url,
    find_referrer_by_code,
    generate_personal_code,
    generate_unique_personal_code,
    normalize_code,
)
from .detection import DetectedReferral, ReferralCodeDetector
from .ledger import ReferralLedger

__all__ = [
    "DetectedReferral",
    "ReferralCodeDetector",
    "ReferralLedger",
    "build_referral_url",
    "find_referrer_by_code",
    "generate_personal_code",
    "generate_unique_personal_code",
    "normalize_code",
]
