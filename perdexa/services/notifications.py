"""
Operator notifications via Brevo transactional email (BREVO_API_KEY).

Best effort: every function returns True/False and never raises, so a mail
outage can not turn a recorded payment into a failed request.
"""
import html
import logging
from typing import Optional

import httpx

from perdexa.core.config import settings

logger = logging.getLogger(__name__)

BREVO_SMTP_URL = "https://api.brevo.com/v3/smtp/email"


def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    *,
    text_content: Optional[str] = None,
    to_name: Optional[str] = None,
) -> bool:
    """
    Send a single transactional email using Brevo API with BREVO_API_KEY.
    Returns True if sent successfully, False otherwise (e.g. BREVO_API_KEY not set).
    """
    api_key = (settings.BREVO_API_KEY or "").strip()
    if not api_key:
        logger.warning(f"[NOTIFY] BREVO_API_KEY not set; dropping email '{subject}'")
        return False

    payload = {
        "sender": {"name": "Perdexa", "email": settings.SENDER_EMAIL},
        "to": [{"email": to_email.strip().lower(), "name": (to_name or "").strip() or None}],
        "subject": subject,
        "htmlContent": html_content,
    }
    if text_content:
        payload["textContent"] = text_content

    headers = {
        "accept": "application/json",
        "content-type": "application/json",
        "api-key": api_key,
    }
    try:
        resp = httpx.post(BREVO_SMTP_URL, headers=headers, json=payload, timeout=15.0)
    except httpx.HTTPError as e:
        logger.error(f"[NOTIFY] Brevo request failed for '{subject}': {e}")
        return False
    if resp.status_code not in (200, 201):
        logger.error(f"[NOTIFY] Brevo rejected '{subject}': {resp.status_code} {resp.text[:200]}")
        return False
    return True


def send_payment_request_email(
    user_email: str,
    user_id: str,
    month_key: str,
    amount: str,
    currency: str,
    *,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    """Tell the billing operator that a user wants to pay for a month."""
    to = (settings.BILLING_ALERT_EMAIL or "").strip()
    if not to:
        logger.warning("[NOTIFY] BILLING_ALERT_EMAIL not set; payment request not delivered")
        return False

    subject = f"Payment request: {user_email} - {month_key} ({amount} {currency})"
    rows = [
        ("User", f"{user_email} ({user_id})"),
        ("Month", month_key),
        ("Amount", f"{amount} {currency}"),
    ]
    if ip:
        rows.append(("IP", ip))
    if user_agent:
        rows.append(("User-Agent", user_agent))

    table = "".join(
        f"<tr><td style=\"padding:6px 0;color:#666\">{html.escape(k)}</td>"
        f"<td style=\"padding:6px 0\"><strong>{html.escape(v)}</strong></td></tr>"
        for k, v in rows
    )
    body = f"""
    <h2>User wants to pay</h2>
    <p>A payment request was sent for <strong>{html.escape(month_key)}</strong>.</p>
    <table>{table}</table>
    <p>This is a request only; no payment has been recorded.</p>
    """
    text = "\n".join(f"{k}: {v}" for k, v in rows) + "\n\nThis is a request only; no payment has been recorded.\n"
    return send_email(to, subject, body, text_content=text)
