"""QR data URIs for gift card account numbers."""

from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass

import qrcode
from loguru import logger
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M

GAN_MIN_LENGTH = 10
GAN_MAX_LENGTH = 16
QR_SCHEME = "sqgc://"

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True, slots=True)
class QRConfig:
    error_correction: int
    box_size: int
    border: int


# Highest quality first; later entries trade scan tolerance for size.
QR_CONFIGS: tuple[QRConfig, ...] = (
    QRConfig(error_correction=ERROR_CORRECT_H, box_size=8, border=4),
    QRConfig(error_correction=ERROR_CORRECT_M, box_size=5, border=2),
    QRConfig(error_correction=ERROR_CORRECT_L, box_size=4, border=1),
)


def clean_gan(raw_value: object) -> str:
    if raw_value is None:
        return ""
    return _NON_DIGITS.sub("", str(raw_value).strip())


def normalize_gan(raw_value: object) -> str | None:
    """Digits-only GAN, or ``None`` when it is not 10 to 16 digits long."""

    cleaned = clean_gan(raw_value)
    if GAN_MIN_LENGTH <= len(cleaned) <= GAN_MAX_LENGTH:
        return cleaned
    return None


def _render_png(data: str, config: QRConfig) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=config.error_correction,
        box_size=config.box_size,
        border=config.border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def generate_gift_card_qr_data_uri(gan: object, *, configs: tuple[QRConfig, ...] = QR_CONFIGS) -> str | None:
    normalized = normalize_gan(gan)
    if normalized is None:
        logger.warning("Invalid GAN format for QR code", gan_length=len(clean_gan(gan)))
        return None

    payload = f"{QR_SCHEME}{normalized}"
    for index, config in enumerate(configs):
        try:
            png = _render_png(payload, config)
        except Exception as exc:
            logger.warning("QR generation failed", attempt=index + 1, error=str(exc))
            continue
        encoded = base64.b64encode(png).decode("ascii")
        return f"data:image/png;base64,{encoded}"
    logger.error("All QR generation attempts failed", gan_suffix=normalized[-4:])
    return None


__all__ = [
    "GAN_MAX_LENGTH",
    "GAN_MIN_LENGTH",
    "QRConfig",
    "QR_CONFIGS",
    "clean_gan",
    "generate_gift_card_qr_data_uri",
    "normalize_gan",
]
