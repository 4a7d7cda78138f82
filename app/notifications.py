"""
Completion notifications (email + WhatsApp).

Best effort: a failed or unconfigured channel is logged and never raised,
so it cannot fail the reconciliation that triggered it.
"""
import asyncio
import logging
from html import escape
from typing import List, Optional

from app.config import get_settings, Settings
from app.email import EmailService, get_email_service
from app.models import EnvelopeRecord, SignerRecord
from app.utils.formatting import strip_pdf_extension
from app.utils.logging import mask_email, mask_phone
from app.whatsapp import WhatsAppService, get_whatsapp_service

logger = logging.getLogger(__name__)


def _completed_email_html(document_name: str, validation_url: str) -> str:
    name = escape(document_name)
    url = escape(validation_url, quote=True)
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="padding: 30px; background: #f9f9f9;">
    <h2 style="color: #273d60;">Documento Assinado com Sucesso!</h2>
    <p style="color: #333; font-size: 16px;">
      O documento <strong>{name}</strong> foi assinado por todos os signatários.
    </p>
    <p style="text-align: center; margin: 30px 0;">
      <a href="{url}" style="background: #273d60; color: white; padding: 15px 40px;
         text-decoration: none; border-radius: 8px; font-weight: bold;">Verificar documento</a>
    </p>
    <p style="color: #999; font-size: 12px; text-align: center;">
      Este documento possui validade legal e todas as assinaturas foram registradas.
    </p>
  </div>
</div>
"""


class CompletionNotifier:
    """Tells every signer that a document reached its final signed state."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        email_service: Optional[EmailService] = None,
        whatsapp_service: Optional[WhatsAppService] = None,
    ):
        self.settings = settings or get_settings()
        self.email_service = email_service or get_email_service()
        self.whatsapp_service = whatsapp_service or get_whatsapp_service()

    async def notify_completed(self, envelope: EnvelopeRecord, signers: List[SignerRecord]) -> None:
        try:
            await self._notify(envelope, signers)
        except Exception as e:
            logger.exception(f"Completion notification failed for {envelope.document_id}: {e}")

    async def _notify(self, envelope: EnvelopeRecord, signers: List[SignerRecord]) -> None:
        document_name = strip_pdf_extension(envelope.name or "Documento")
        validation_url = self.settings.get_validation_url(envelope.document_id)
        subject = f"Documento Assinado - {document_name}"
        html = _completed_email_html(document_name, validation_url)

        email_tasks = [
            self.email_service.send_email(to_email=s.email, subject=subject, html=html)
            for s in signers
            if s.email
        ]
        if email_tasks:
            results = await asyncio.gather(*email_tasks, return_exceptions=True)
            for signer, result in zip([s for s in signers if s.email], results):
                if isinstance(result, Exception) or not result.success:
                    logger.warning(f"Completion email to {mask_email(signer.email)} not delivered: {result}")

        body = (
            f"O documento \"{document_name}\" foi assinado por todos os signatários.\n"
            f"Verifique em: {validation_url}"
        )
        for signer in signers:
            if not signer.phone:
                continue
            try:
                result = self.whatsapp_service.send_message(signer.phone, body)
            except Exception as e:
                logger.warning(f"Completion WhatsApp to {mask_phone(signer.phone)} raised: {e}")
                continue
            if not result.success:
                logger.warning(f"Completion WhatsApp to {mask_phone(signer.phone)} failed: {result.error}")

        logger.info(f"Completion notifications dispatched for {envelope.document_id} ({len(signers)} signer(s))")


_notifier: Optional[CompletionNotifier] = None


def get_completion_notifier() -> CompletionNotifier:
    """Get the completion notifier singleton."""
    global _notifier
    if _notifier is None:
        _notifier = CompletionNotifier()
    return _notifier
