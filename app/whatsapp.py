"""
WhatsApp messages through the Twilio Messaging API.
Runs in sandbox mode (log only) when Twilio is not configured.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from twilio.base.exceptions import TwilioRestException

from app.config import get_settings, Settings
from app.utils.formatting import to_e164
from app.utils.logging import mask_phone

logger = logging.getLogger(__name__)


@dataclass
class WhatsAppResult:
    success: bool
    sid: Optional[str] = None
    error: Optional[str] = None
    sandbox: bool = False


class WhatsAppService:
    """Twilio WhatsApp sender."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client = None
        self._sandbox_mode = not (
            self.settings.twilio_account_sid
            and self.settings.twilio_auth_token
            and self.settings.twilio_whatsapp_from
        )

    @property
    def is_sandbox(self) -> bool:
        """Check if running in sandbox mode (no Twilio credentials)."""
        return self._sandbox_mode

    @property
    def client(self):
        """Get Twilio client (only when configured)."""
        if self._sandbox_mode:
            return None

        if self._client is None:
            from twilio.rest import Client
            self._client = Client(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token,
            )
        return self._client

    def send_message(self, phone: str, body: str) -> WhatsAppResult:
        to = to_e164(phone)
        if not to:
            return WhatsAppResult(success=False, error="Invalid phone number")

        if self.is_sandbox:
            logger.info(f"whatsapp_send_sandbox: phone={mask_phone(to)}")
            return WhatsAppResult(success=True, sandbox=True)

        try:
            message = self.client.messages.create(
                body=body,
                from_=f"whatsapp:{self.settings.twilio_whatsapp_from}",
                to=f"whatsapp:{to}",
            )
        except TwilioRestException as e:
            logger.error(f"WhatsApp send error: {e.code} - {e.msg}")
            return WhatsAppResult(success=False, error=str(e.msg))

        logger.info(f"WhatsApp message sent to {mask_phone(to)}: {message.sid}")
        return WhatsAppResult(success=True, sid=message.sid)


_whatsapp_service: Optional[WhatsAppService] = None


def get_whatsapp_service() -> WhatsAppService:
    """Get singleton WhatsApp service instance."""
    global _whatsapp_service
    if _whatsapp_service is None:
        _whatsapp_service = WhatsAppService()
    return _whatsapp_service
