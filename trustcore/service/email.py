from __future__ import annotations

import html
import smtplib
import ssl
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, List, Optional

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.storage.models import RetentionTaskResult

logger = get_logger(__name__)

SENT_HISTORY_LIMIT = 100

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        td { padding: 4px 12px 4px 0; }
        .alert { color: #b42318; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Operator notifications for retention runs and integrity alerts.

    Falls back to logging the message when SMTP is not configured.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Trust Core",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        # Recent unconfigured-mode messages, newest last
        self.sent: Deque[dict] = deque(maxlen=SENT_HISTORY_LIMIT)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send via SMTP; True when delivered or logged in unconfigured mode."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            self.sent.append({"to": to_email, "subject": subject, "text": text_body})
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_retention_report(
        self,
        to_email: str,
        result: RetentionTaskResult,
        *,
        over_capacity: bool = False,
    ) -> bool:
        status = "succeeded" if result.success else "FAILED"
        subject = f"Audit retention run {status}"
        rows = [
            ("Executed at", result.executed_at.isoformat()),
            ("Archived", str(result.archived)),
            ("Purged", str(result.purged)),
            ("Space freed (bytes)", str(result.space_freed_bytes)),
            ("Duration (s)", f"{result.duration_seconds:.2f}"),
            ("Bundles written", str(len(result.bundles_written))),
            ("Bundles purged", str(result.bundles_purged)),
            ("Flagged entries", ", ".join(map(str, result.flagged_ids)) or "none"),
        ]
        if result.error:
            rows.append(("Error", result.error))
        notes = []
        if over_capacity:
            notes.append("The audit store is above its configured size limit.")
        if result.flagged_ids:
            notes.append(
                "Flagged entries failed hash verification and were left in the active tier."
            )

        table = "\n".join(
            f"<tr><td>{html.escape(k)}</td><td>{html.escape(v)}</td></tr>" for k, v in rows
        )
        note_html = "".join(f'<p class="alert">{html.escape(n)}</p>' for n in notes)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Audit retention run {status}</h1>
        <table>{table}</table>
        {note_html}
        <div class="footer"><p>{html.escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""
        text_lines = [f"Audit retention run {status}", ""]
        text_lines += [f"{k}: {v}" for k, v in rows]
        if notes:
            text_lines += [""] + notes
        return self._send_email(to_email, subject, html_body, "\n".join(text_lines))

    def send_integrity_alert(self, to_email: str, failed_ids: List[int]) -> bool:
        subject = "Audit log integrity violation detected"
        ids = ", ".join(map(str, failed_ids))
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Integrity violation</h1>
        <p class="alert">{len(failed_ids)} audit entries failed hash-chain verification.</p>
        <p>Sequence ids: {html.escape(ids)}</p>
        <p>These entries were flagged and kept in the active tier. Nothing was corrected automatically.</p>
        <div class="footer"><p>{html.escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""
        text_body = (
            "Integrity violation\n\n"
            f"{len(failed_ids)} audit entries failed hash-chain verification.\n"
            f"Sequence ids: {ids}\n\n"
            "These entries were flagged and kept in the active tier. "
            "Nothing was corrected automatically.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
