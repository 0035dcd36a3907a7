"""Plain text and HTML bodies for referral and gift card notifications."""

from __future__ import annotations

import html
from dataclasses import dataclass

SMS_OPT_OUT_FOOTER = "Reply STOP to opt out"


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def format_usd(amount_cents: int | None) -> str:
    return f"${(amount_cents or 0) / 100:.2f}"


def _greeting(name: str | None) -> str:
    cleaned = (name or "").strip()
    return f"Hi {cleaned}," if cleaned else "Hi there,"


def render_referral_code(
    *,
    customer_name: str | None,
    referral_code: str,
    referral_url: str,
    business_name: str,
    reward_amount_cents: int,
) -> RenderedTemplate:
    reward = format_usd(reward_amount_cents)
    greeting = _greeting(customer_name)
    subject = f"Your {business_name} referral code"
    text_body = "\n".join(
        [
            greeting,
            "",
            f"Share your personal code {referral_code} with friends.",
            f"They get {reward} off their first visit and you get {reward} after they pay.",
            "",
            f"Your link: {referral_url}",
            "",
            f"See you soon at {business_name}!",
        ]
    )
    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
    <p>Share your personal code <strong>{html.escape(referral_code)}</strong> with friends.</p>
    <p>They get <strong>{reward}</strong> off their first visit and you get <strong>{reward}</strong> after they pay.</p>
    <p><a href="{html.escape(referral_url, quote=True)}">{html.escape(referral_url)}</a></p>
    <p>See you soon at {html.escape(business_name)}!</p>
  </body>
</html>"""
    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)


def render_gift_card_issued(
    *,
    customer_name: str | None,
    business_name: str,
    gift_card_gan: str,
    amount_cents: int,
    balance_cents: int | None,
    activation_url: str | None,
    pass_kit_url: str | None,
    qr_data_uri: str | None,
) -> RenderedTemplate:
    amount_label = format_usd(amount_cents)
    balance_label = format_usd(balance_cents) if balance_cents else amount_label
    subject = f"{amount_label} gift card from {business_name}"
    heading = f"Your {amount_label} gift card is ready"
    greeting = _greeting(customer_name)

    text_lines = [
        greeting,
        "",
        heading,
        f"Card number: {gift_card_gan}",
        f"Balance: {balance_label}",
    ]
    if activation_url:
        text_lines.append(f"View your card: {activation_url}")
    if pass_kit_url:
        text_lines.append(f"Add to Apple Wallet: {pass_kit_url}")
    text_lines.extend(["", "Show the card number or QR code at checkout.", business_name])

    extras: list[str] = []
    if qr_data_uri:
        extras.append(f'<p><img src="{qr_data_uri}" width="240" height="240" alt="Gift card QR code" /></p>')
    if activation_url:
        extras.append(f'<p><a href="{html.escape(activation_url, quote=True)}">View digital gift card</a></p>')
    if pass_kit_url:
        extras.append(f'<p><a href="{html.escape(pass_kit_url, quote=True)}">Add to Apple Wallet</a></p>')
    extras_html = "\n    ".join(extras)

    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
    <h2>{html.escape(heading)}</h2>
    <p>Card number: <strong>{html.escape(gift_card_gan)}</strong></p>
    <p>Balance: <strong>{balance_label}</strong></p>
    {extras_html}
    <p>Show the card number or QR code at checkout.</p>
    <p>{html.escape(business_name)}</p>
  </body>
</html>"""
    return RenderedTemplate(subject=subject, text_body="\n".join(text_lines), html_body=html_body)


def render_admin_referral_used(
    *,
    friend_name: str,
    friend_customer_id: str,
    referrer_name: str,
    referrer_customer_id: str,
    referral_code: str,
    booking_id: str | None,
    gift_card_gan: str | None,
    amount_cents: int,
) -> RenderedTemplate:
    subject = f"Referral code {referral_code} used by {friend_name or friend_customer_id}"
    rows = [
        ("Friend", f"{friend_name} ({friend_customer_id})"),
        ("Referrer", f"{referrer_name} ({referrer_customer_id})"),
        ("Referral code", referral_code),
        ("Booking", booking_id or "n/a"),
        ("Friend gift card", gift_card_gan or "pending"),
        ("Amount", format_usd(amount_cents)),
    ]
    text_body = "\n".join(f"{label}: {value}" for label, value in rows)
    table_rows = "".join(
        f"<tr><th align=\"left\">{html.escape(label)}</th><td>{html.escape(value)}</td></tr>" for label, value in rows
    )
    html_body = f"""<html>
  <body>
    <h3>Referral code used</h3>
    <table>{table_rows}</table>
  </body>
</html>"""
    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)


def render_referral_sms(*, customer_name: str | None, referral_url: str, business_name: str, reward_amount_cents: int) -> str:
    name = (customer_name or "").strip() or "friend"
    reward = format_usd(reward_amount_cents)
    body = (
        f"{business_name} Referral: {name}, share your link. Friend gets {reward} off the first visit, "
        f"you get {reward} after. {referral_url}"
    )
    if "reply stop" in body.lower():
        return body
    return f"{body} {SMS_OPT_OUT_FOOTER}"


__all__ = [
    "RenderedTemplate",
    "SMS_OPT_OUT_FOOTER",
    "format_usd",
    "render_admin_referral_used",
    "render_gift_card_issued",
    "render_referral_code",
    "render_referral_sms",
]
