import logging
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """
    Transactional email for donors, sent through SendGrid.
    Falls back to logging the message when SendGrid is not configured.
    """

    def __init__(self, api_key: str | None = None, sender_email: str | None = None):
        self.sendgrid_api_key = api_key
        self.sender_email = sender_email

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    def _send(self, to_email: str, subject: str, html_content: str) -> bool:
        if not self.enabled:
            logger.info(f"📨 [Mock Email] To: {to_email} | Subject: {subject}")
            return True

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ Email sent to {to_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send email to %s: %s", to_email, e)
            return False

    # ============================================================
    # ⚠️ Recurring donation payment failed
    # ============================================================
    def send_payment_failed_email(
        self,
        to_email: str,
        donor_name: str,
        org_name: str,
        amount: float,
        currency: str,
    ) -> bool:
        """Tell a donor their recurring card charge was declined."""
        subject = f"Action needed: your donation to {org_name} could not be processed"

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>Hi {donor_name},</h2>
            <p>We tried to process your recurring donation of
            <strong>{amount:.2f} {currency.upper()}</strong> to
            <strong>{org_name}</strong>, but the payment was declined.</p>

            <p>Please update your card in your donor dashboard so your support
            can continue without interruption.</p>

            <p style="text-align: center; margin: 20px 0;">
                <a href="{settings.FRONTEND_URL}/donor/dashboard/subscriptions" style="
                    background-color: #4F46E5;
                    color: white;
                    padding: 12px 28px;
                    text-decoration: none;
                    border-radius: 6px;
                    font-weight: bold;
                    display: inline-block;
                ">Update payment method</a>
            </p>

            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Thank you for your generosity,<br><strong>The DonorHub Team</strong></p>
        </div>
        """

        return self._send(to_email, subject, html_content)


# ============================================================
# ✅ Global instance for app-wide import
# ============================================================
email_service = EmailService(settings.SENDGRID_API_KEY, settings.MAIL_FROM)
