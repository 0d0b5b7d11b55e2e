"""
email_digest.py — Email digest of the opportunities a batch added.
Sends via SMTP over SSL (Gmail App Password by default).
"""

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from config import DIGEST, DIGEST_RECIPIENTS, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER
from models import Opportunity, SessionSummary
from monitoring import get_logger

logger = get_logger("email_digest")

PRIORITY_COLORS = {"high": "#dc2626", "medium": "#f59e0b", "low": "#6b7280"}


def send_digest(summary: SessionSummary, opportunities: list[Opportunity], duration: float) -> bool:
    """
    Send the batch digest. Skipped when SMTP isn't configured, nobody is
    listed to receive it, or the batch added nothing. Returns True if sent.
    """
    if not SMTP_USER or not SMTP_PASSWORD:
        logger.warning("Email credentials not configured — skipping digest")
        return False
    if not DIGEST_RECIPIENTS:
        logger.warning("No digest recipients configured — skipping digest")
        return False
    if summary.total_opportunities_inserted == 0:
        logger.info("No new opportunities — skipping digest")
        return False

    subject, html_body = build_email_content(summary, opportunities, duration)

    try:
        _send_email(subject, html_body)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email digest: {e}")
        return False
    logger.info(f"Email digest sent to {len(DIGEST_RECIPIENTS)} recipients")
    return True


def build_email_content(summary: SessionSummary, opportunities: list[Opportunity], duration: float) -> tuple[str, str]:
    """Build email subject and HTML body for a finished batch."""
    high = [o for o in opportunities if o.priority == "high"]
    subject = f"🚑 {summary.total_opportunities_inserted} New EMS Opportunities"
    if high:
        subject += f" ({len(high)} high priority)"

    html_parts = [_html_header()]

    html_parts.append(f"""
    <div style="background:#f8f9fa; padding:16px; border-radius:8px; margin-bottom:20px;">
        <h2 style="margin:0 0 8px 0; color:#333;">Batch Summary</h2>
        <p style="margin:4px 0; color:#555;">New opportunities: <strong>{summary.total_opportunities_inserted}</strong></p>
        <p style="margin:4px 0; color:#555;">Sources succeeded: <strong>{summary.sources_succeeded}</strong></p>
        <p style="margin:4px 0; color:#555;">Sources failed: <strong>{summary.sources_failed}</strong></p>
        <p style="margin:4px 0; color:#555;">Run time: <strong>{duration:.1f}s</strong></p>
    </div>
    """)

    # Per-source counts
    html_parts.append('<h2 style="color:#333;">By Source</h2>')
    html_parts.append('<ul style="color:#555;">')
    for entry in sorted(summary.per_source, key=lambda e: e["opportunities"], reverse=True):
        status = "" if entry["status"] == "completed" else f' <span style="color:#dc2626;">({entry["status"]})</span>'
        html_parts.append(f'<li>{escape(entry["name"])}: {entry["opportunities"]}{status}</li>')
    html_parts.append('</ul>')

    if opportunities:
        html_parts.append('<h2 style="color:#333;">New Opportunities</h2>')
        ordered = sorted(opportunities, key=lambda o: (("high", "medium", "low").index(o.priority), o.proposal_due))
        for opp in ordered[:10]:
            color = PRIORITY_COLORS.get(opp.priority, "#6b7280")
            location = ", ".join(p for p in (opp.geography_county, opp.geography_state) if p) or "Location N/A"
            tags = ", ".join(opp.service_tags) if opp.service_tags else "—"
            html_parts.append(f"""
            <div style="border:1px solid #e0e0e0; border-radius:8px; padding:14px; margin-bottom:12px;">
                <div style="display:flex; justify-content:space-between; align-items:center;">
                    <h3 style="margin:0; color:#1a1a1a;">{escape(opp.title)}</h3>
                    <span style="background:{color}; color:white; padding:3px 10px; border-radius:12px; font-size:13px;">{opp.priority}</span>
                </div>
                <p style="margin:4px 0; color:#666;">{escape(opp.agency)} · {escape(location)} · {opp.contract_type}</p>
                <p style="margin:4px 0; color:#555; font-size:13px;">Due: <strong>{opp.proposal_due}</strong> · {escape(tags)}</p>
                <p style="margin:6px 0; color:#333; font-size:13px;">{escape(opp.summary)}</p>
                <a href="{escape(opp.link)}" style="color:#4f46e5; text-decoration:none; font-size:13px;">View Solicitation →</a>
            </div>
            """)
        if len(opportunities) > 10:
            html_parts.append(f'<p style="color:#666;">...and {len(opportunities) - 10} more.</p>')

    dashboard_url = DIGEST.get("dashboard_url")
    if dashboard_url:
        html_parts.append(f"""
    <div style="text-align:center; margin:24px 0;">
        <a href="{dashboard_url}" style="background:#4f46e5; color:white; padding:12px 24px; border-radius:6px; text-decoration:none; font-weight:bold;">
            Open the Opportunity Dashboard
        </a>
    </div>
    """)

    if summary.errors:
        html_parts.append('<h2 style="color:#dc2626;">⚠️ Errors</h2>')
        html_parts.append('<ul style="color:#666;">')
        for error in summary.errors:
            html_parts.append(f'<li>{escape(error)}</li>')
        html_parts.append('</ul>')

    html_parts.append(_html_footer())

    return subject, "\n".join(html_parts)


def _html_header() -> str:
    return """
    <!DOCTYPE html>
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width:600px; margin:0 auto; padding:20px; color:#333;">
    <h1 style="color:#4f46e5; border-bottom:2px solid #4f46e5; padding-bottom:8px;">🔍 Opportunity Scout Digest</h1>
    """


def _html_footer() -> str:
    return """
    <hr style="border:none; border-top:1px solid #e0e0e0; margin:24px 0;">
    <p style="color:#999; font-size:12px; text-align:center;">
        This email was sent by the Opportunity Scout discovery pipeline.
    </p>
    </body>
    </html>
    """


def _send_email(subject: str, html_body: str):
    """Send an email via SMTP over SSL."""
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = SMTP_USER
    msg["To"] = ", ".join(DIGEST_RECIPIENTS)

    msg.attach(MIMEText(html_body, "html"))

    with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=30) as server:
        server.login(SMTP_USER, SMTP_PASSWORD)
        server.sendmail(SMTP_USER, DIGEST_RECIPIENTS, msg.as_string())
