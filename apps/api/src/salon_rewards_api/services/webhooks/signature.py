"""Square webhook signature verification with URL/body fallbacks."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Mapping

from loguru import logger

SIGNATURE_HEADERS = ("x-square-hmacsha256-signature", "x-square-signature")


@dataclass(slots=True)
class SignatureAttempt:
    url: str
    body_encoding: str
    matched: bool

    def as_dict(self) -> dict[str, Any]:
        return {"url": self.url, "bodyEncoding": self.body_encoding, "matched": self.matched}


@dataclass(slots=True)
class SignatureVerification:
    valid: bool
    matched_url: str | None = None
    attempts: list[SignatureAttempt] = field(default_factory=list)

    def debug_payload(self) -> dict[str, Any]:
        return {
            "matchedUrl": self.matched_url,
            "attempts": [attempt.as_dict() for attempt in self.attempts],
        }


def compute_signature(body: str | bytes, notification_url: str, secret: str) -> str:
    """base64(HMAC-SHA256(secret, body + notification_url))."""

    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body + notification_url.encode("utf-8"), hashlib.sha256)
    return base64.b64encode(digest.digest()).decode("ascii")


def signatures_match(expected: str, provided: str) -> bool:
    expected_bytes = expected.encode("utf-8")
    provided_bytes = provided.strip().encode("utf-8")
    if len(expected_bytes) != len(provided_bytes):
        return False
    return hmac.compare_digest(expected_bytes, provided_bytes)


def normalize_url(url: str | None) -> str | None:
    if not url:
        return None
    trimmed = url.strip()
    while trimmed.endswith("/") and len(trimmed) > 1:
        trimmed = trimmed[:-1]
    return trimmed or None


def build_request_url(headers: Mapping[str, str], path: str) -> str | None:
    """Rebuild the public callback URL from proxy headers."""

    host = headers.get("x-forwarded-host") or headers.get("host")
    if not host:
        return None
    host = host.split(",")[0].strip()
    proto = (headers.get("x-forwarded-proto") or "https").split(",")[0].strip() or "https"
    return f"{proto}://{host}{path}"


def extract_signature(headers: Mapping[str, str]) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


class SignatureVerifier:
    """Tries each candidate URL with and without a trailing slash, as text and as bytes."""

    def __init__(self, secret: str, *, configured_url: str | None = None) -> None:
        if not secret:
            raise ValueError("Webhook signature key must be configured")
        self._secret = secret
        self._configured_url = normalize_url(configured_url)

    def candidate_urls(self, computed_url: str | None) -> list[str]:
        candidates: list[str] = []
        for url in (self._configured_url, normalize_url(computed_url)):
            if url and url not in candidates:
                candidates.append(url)
        return candidates

    def verify(self, body: bytes | str, signature: str, computed_url: str | None = None) -> SignatureVerification:
        body_bytes = body.encode("utf-8") if isinstance(body, str) else body
        body_text = body_bytes.decode("utf-8", errors="surrogateescape")
        result = SignatureVerification(valid=False)

        for base_url in self.candidate_urls(computed_url):
            permutations = (
                (base_url, "text", body_text),
                (base_url, "buffer", body_bytes),
                (f"{base_url}/", "text", body_text),
                (f"{base_url}/", "buffer", body_bytes),
            )
            for url, encoding, payload in permutations:
                if isinstance(payload, str):
                    payload = payload.encode("utf-8", errors="surrogateescape")
                expected = compute_signature(payload, url, self._secret)
                matched = signatures_match(expected, signature)
                result.attempts.append(SignatureAttempt(url=url, body_encoding=encoding, matched=matched))
                if matched:
                    result.valid = True
                    result.matched_url = url
                    return result

        logger.warning(
            "Square webhook signature rejected",
            attempted_urls=sorted({attempt.url for attempt in result.attempts}),
        )
        return result


__all__ = [
    "SIGNATURE_HEADERS",
    "SignatureAttempt",
    "SignatureVerification",
    "SignatureVerifier",
    "build_request_url",
    "compute_signature",
    "extract_signature",
    "normalize_url",
    "signatures_match",
]
