"""
Email bodies for purchase and cash-out notifications.

Each renderer returns (subject, html, text); the text part is the fallback for
clients that cannot render HTML.
"""
from html import escape
from typing import Optional, Tuple

from common.fees import format_usd
from common.settings import settings

Rendered = Tuple[str, str, str]

_LAYOUT = """<html><body style="background:#000;color:#fff;font-family:sans-serif;padding:24px">
<h1 style="font-size:24px">{heading}</h1>
{body}
<p style="color:#6b7280;font-size:12px;margin-top:32px">Granted</p>
</body></html>"""


def content_link(content_url: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.public_base_url).rstrip("/")
    return f"{base}/{content_url.lstrip('/')}"


def _button(href: str, label: str) -> str:
    return (f'<p><a href="{escape(href)}" style="background:#fff;color:#000;padding:12px 24px;'
            f'border-radius:8px;font-weight:bold;text-decoration:none">{escape(label)}</a></p>')


def render_purchase_link(content_url: str, content_name: Optional[str] = None,
                         base_url: Optional[str] = None) -> Rendered:
    """Buyer receipt carrying the unlock link."""
    title = content_name or content_url
    link = content_link(content_url, base_url)
    subject = f"Your Purchase Link - {title}"
    body = (
        f"<p>Thanks for your purchase of <strong>{escape(title)}</strong>.</p>"
        + _button(link, "Open your content")
        + "<p>You can come back to it any time with this link:</p>"
        + f'<p style="word-break:break-all;background:#171717;padding:12px">{escape(link)}</p>'
    )
    text = f"Thanks for your purchase of {title}.\n\nOpen your content any time at:\n{link}\n"
    return subject, _LAYOUT.format(heading="Your purchase is ready", body=body), text


def render_link_purchase(content_url: str, content_name: Optional[str], amount_in_cents: int,
                         base_url: Optional[str] = None) -> Rendered:
    """Seller notice that one of their contents sold, with the listed price."""
    title = content_name or content_url
    link = content_link(content_url, base_url)
    amount = format_usd(amount_in_cents)
    subject = f"Your Link Was Purchased - {title}"
    body = (
        f"<p>Someone just bought <strong>{escape(title)}</strong>.</p>"
        f'<p style="font-size:24px;font-weight:bold">{amount}</p>'
        + _button(link, "View link")
    )
    text = f"Someone just bought {title} for {amount}.\n\n{link}\n"
    return subject, _LAYOUT.format(heading="New sale", body=body), text


def render_cash_out(amount_in_cents: int, payout_method: str, first_name: Optional[str] = None) -> Rendered:
    amount = format_usd(amount_in_cents)
    duration = "Instantly" if payout_method == "instant" else "1-3 business days"
    greeting = f"Hi {first_name}," if first_name else "Hi,"
    subject = f"Cash Out Successful - {amount}"
    body = (
        f"<p>{escape(greeting)}</p>"
        f"<p>Your cash out of <strong>{amount}</strong> is on its way.</p>"
        f"<p>Expected arrival: {duration}</p>"
    )
    text = f"{greeting}\n\nYour cash out of {amount} is on its way.\nExpected arrival: {duration}\n"
    return subject, _LAYOUT.format(heading="Cash Out Successful!", body=body), text


TEMPLATE_PURCHASE_LINK = "purchase_link"
TEMPLATE_LINK_PURCHASE = "link_purchase"
TEMPLATE_CASH_OUT = "cash_out"

TEMPLATES = {
    TEMPLATE_PURCHASE_LINK: render_purchase_link,
    TEMPLATE_LINK_PURCHASE: render_link_purchase,
    TEMPLATE_CASH_OUT: render_cash_out,
}


def render(template: str, template_data: dict) -> Rendered:
    try:
        renderer = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"unknown email template {template!r}")
    return renderer(**template_data)
