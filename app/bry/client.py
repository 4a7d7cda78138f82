"""
BRy Easy Signature API client.

Tokens are short-lived client-credential JWTs. The client never caches
them across calls: a caller that needs several requests for one logical
operation (a sweep, an evidence download) obtains one token and passes it
to each method.
"""
import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.bry.responses import (
    CreatedEnvelope,
    ProviderEnvelopeState,
    parse_created_envelope,
    parse_envelope_state,
)
from app.config import Settings, get_settings
from app.utils.formatting import to_e164
from app.utils.logging import mask_email

logger = logging.getLogger(__name__)

SIGN_API_PATH = "/api/service/sign/v1"
WEBHOOK_TYPE = "easy.signature"


class ProviderError(Exception):
    """BRy answered with a non-success status, or could not be reached."""

    def __init__(self, message: str, status_code: int = 0, body: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        return f"{self.message} (status={self.status_code})"


class BryClient:
    """Thin async wrapper over the BRy token service and signature API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    @property
    def api_base_url(self) -> str:
        return self.settings.get_bry_api_base_url()

    def is_configured(self) -> bool:
        return bool(self.settings.bry_client_id and self.settings.bry_client_secret)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.bry_timeout_seconds,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request; anything but 2xx becomes ProviderError."""
        try:
            async with self._http() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"BRy {operation} timed out: {e}")
            raise ProviderError(f"BRy {operation} timed out", status_code=504) from e
        except httpx.HTTPError as e:
            logger.warning(f"BRy {operation} transport error: {e}")
            raise ProviderError(f"BRy {operation} unreachable: {e}", status_code=0) from e

        if response.status_code >= 400:
            body = response.text[:2000]
            logger.warning(f"BRy {operation} failed: {response.status_code} {body[:200]}")
            raise ProviderError(
                f"BRy {operation} failed",
                status_code=response.status_code,
                body=body,
            )
        return response

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def authenticate(self) -> str:
        """Obtain a fresh access token (client_credentials grant)."""
        if not self.is_configured():
            raise ProviderError("BRy credentials not configured", status_code=0)

        basic = base64.b64encode(
            f"{self.settings.bry_client_id}:{self.settings.bry_client_secret}".encode()
        ).decode()
        response = await self._request(
            "POST",
            self.settings.bry_auth_url,
            operation="authenticate",
            headers={
                "Authorization": f"Basic {basic}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            content="grant_type=client_credentials",
        )
        try:
            token = response.json().get("access_token")
        except ValueError as e:
            raise ProviderError("BRy token response is not JSON", response.status_code, response.text) from e
        if not token:
            raise ProviderError("BRy token response has no access_token", response.status_code, response.text)
        return token

    async def create_envelope(
        self,
        title: str,
        signers: List[Dict[str, Any]],
        documents: List[bytes],
        auth_options: List[str],
        signature_mode: str,
        token: Optional[str] = None,
    ) -> CreatedEnvelope:
        """
        Create a signature envelope.

        Args:
            title: Envelope name shown to signers
            signers: dicts with name, email, phone
            documents: raw PDF bytes, one per sub-document, in envelope order
            auth_options: BRy authenticationOptions for every signer
            signature_mode: signatureConfig.mode
        """
        token = token or await self.authenticate()

        signers_data = []
        for signer in signers:
            entry = {
                "name": signer.get("name"),
                "email": signer.get("email"),
                "authenticationOptions": list(auth_options),
            }
            phone = to_e164(signer.get("phone"))
            if phone:
                entry["phone"] = phone
            signers_data.append(entry)

        payload = {
            "name": title,
            "clientName": self.settings.bry_client_name,
            "signersData": signers_data,
            "signatureConfig": {"mode": signature_mode},
            # Notifications are sent by us, not by BRy
            "typeMessaging": ["LINK"],
            "documents": [
                {"base64Document": base64.b64encode(doc).decode()} for doc in documents
            ],
        }

        logger.info(
            f"Creating BRy envelope '{title}' with {len(signers_data)} signer(s): "
            f"{[mask_email(s.get('email')) for s in signers_data]}"
        )
        response = await self._request(
            "POST",
            f"{self.api_base_url}{SIGN_API_PATH}/signatures",
            operation="create_envelope",
            headers=self._auth_headers(token),
            json=payload,
        )
        try:
            created = parse_created_envelope(response.json(), self.api_base_url)
        except ValueError as e:
            raise ProviderError(f"Unexpected create_envelope response: {e}", response.status_code, response.text) from e

        logger.info(
            f"BRy envelope created: {created.envelope_id}, "
            f"{len(created.document_ids)} document(s), {len(created.signer_links)} link(s)"
        )
        return created

    async def get_envelope_state(
        self,
        envelope_id: str,
        token: Optional[str] = None,
    ) -> ProviderEnvelopeState:
        """
        Current envelope state.

        The full envelope endpoint carries signers and documents; the
        /status endpoint is used when the envelope endpoint is missing.
        """
        token = token or await self.authenticate()
        base = f"{self.api_base_url}{SIGN_API_PATH}/signatures/{envelope_id}"

        try:
            response = await self._request(
                "GET", base, operation="get_envelope", headers=self._auth_headers(token)
            )
        except ProviderError as e:
            if e.status_code != 404:
                raise
            logger.info(f"Envelope endpoint returned 404 for {envelope_id}, trying /status")
            response = await self._request(
                "GET", f"{base}/status", operation="get_envelope_status", headers=self._auth_headers(token)
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("BRy envelope response is not JSON", response.status_code, response.text) from e

        state = parse_envelope_state(data)
        if not state.envelope_id:
            state.envelope_id = envelope_id
        return state

    async def download_signed_document(
        self,
        envelope_id: str,
        document_id: str,
        token: Optional[str] = None,
    ) -> bytes:
        token = token or await self.authenticate()
        response = await self._request(
            "GET",
            f"{self.api_base_url}{SIGN_API_PATH}/signatures/{envelope_id}/documents/{document_id}/signed",
            operation="download_signed",
            headers=self._auth_headers(token),
        )
        return response.content

    async def download_unified_report(
        self,
        envelope_id: str,
        document_id: str,
        token: Optional[str] = None,
    ) -> bytes:
        """Signed document plus BRy's evidence trail, composed by BRy."""
        token = token or await self.authenticate()
        response = await self._request(
            "GET",
            f"{self.api_base_url}{SIGN_API_PATH}/signatures/{envelope_id}/documents/{document_id}/reportUnified",
            operation="download_report",
            headers={**self._auth_headers(token), "Accept": "application/pdf"},
        )
        return response.content

    async def register_webhook(self, url: str, token: Optional[str] = None) -> Dict[str, Any]:
        token = token or await self.authenticate()
        response = await self._request(
            "POST",
            f"{self.api_base_url}{SIGN_API_PATH}/webhook",
            operation="register_webhook",
            headers=self._auth_headers(token),
            json={"urlEndpoint": url, "webhookType": WEBHOOK_TYPE},
        )
        logger.info(f"BRy webhook registered: {url} ({response.status_code})")
        try:
            return response.json()
        except ValueError:
            return {"status": response.status_code, "response": response.text}


_bry_client: Optional[BryClient] = None


def get_bry_client() -> BryClient:
    """Get singleton BRy client instance."""
    global _bry_client
    if _bry_client is None:
        _bry_client = BryClient()
    return _bry_client
