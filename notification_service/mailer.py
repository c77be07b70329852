import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple
import requests
from common.error_handling import NotificationDeliveryFailed
from common.retry import RetryConfig, retry_call
from common.settings import settings
from notification_service.templates import render

logger = logging.getLogger(__name__)

class TransientMailError(Exception):
    """Rate limits and 5xx from the mail API; worth another attempt."""

MAIL_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=[requests.ConnectionError, requests.Timeout, TransientMailError],
)

@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    template: str
    template_data: dict = field(default_factory=dict)
    html: str = ""
    text: Optional[str] = None

def build_message(to: str, template: str, template_data: dict) -> EmailMessage:
    subject, html, text = render(template, template_data)
    return EmailMessage(to=to, subject=subject, template=template, template_data=template_data,
                        html=html, text=text)

class ResendMailer:
    """Sends transactional email through the Resend HTTP API."""

    def __init__(self, api_key: str = None, api_url: str = None, from_email: str = None,
                 session: requests.Session = None, retry_config: RetryConfig = MAIL_RETRY_CONFIG,
                 timeout: float = 10.0):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = api_url or settings.resend_api_url
        self.from_email = from_email or settings.resend_from_email
        self.session = session or requests.Session()
        self.retry_config = retry_config
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _post(self, message: EmailMessage) -> Tuple[str, Optional[str]]:
        """One API call. Returns (message id, rejection reason); only transient failures raise."""
        payload = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text
        resp = self.session.post(
            self.api_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientMailError(f"mail API returned {resp.status_code}")
        if resp.status_code >= 400:
            return "", f"mail API rejected message: {resp.status_code} {resp.text[:200]}"
        return resp.json().get("id", ""), None

    def send(self, message: EmailMessage) -> str:
        """Deliver one message and return the provider's message id."""
        if not self.enabled:
            raise NotificationDeliveryFailed("RESEND_API_KEY is not configured")
        try:
            message_id, rejection = retry_call(self._post, self.retry_config, message)
        except (requests.RequestException, TransientMailError, ValueError) as e:
            raise NotificationDeliveryFailed(f"could not deliver email: {e}", original_error=e) from e
        if rejection is not None:
            raise NotificationDeliveryFailed(rejection)
        logger.info(f"Email sent: {message.template} to {message.to}", extra={"message_id": message_id})
        return message_id
