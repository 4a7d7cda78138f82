"""
Tests for the BRy HTTP client, using httpx.MockTransport in place of the network.
"""
import base64
import json

import httpx
import pytest

from app.bry.client import BryClient, ProviderError

API = "https://easysign.hom.bry.com.br/api/service/sign/v1"
AUTH_URL = "https://cloud.bry.com.br/token-service/jwt"


def _client(settings, handler) -> BryClient:
    return BryClient(settings=settings, transport=httpx.MockTransport(handler))


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"access_token": "jwt-abc", "expires_in": 300})

        token = await _client(settings, handler).authenticate()

        assert token == "jwt-abc"
        assert seen["url"] == AUTH_URL
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["body"] == "grant_type=client_credentials"

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, settings):
        client = _client(settings, lambda r: httpx.Response(401, json={"error": "invalid_client"}))

        with pytest.raises(ProviderError) as exc_info:
            await client.authenticate()

        assert exc_info.value.status_code == 401
        assert "invalid_client" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_missing_token_field(self, settings):
        client = _client(settings, lambda r: httpx.Response(200, json={"token_type": "bearer"}))

        with pytest.raises(ProviderError, match="no access_token"):
            await client.authenticate()

    @pytest.mark.asyncio
    async def test_not_configured(self, settings):
        settings.bry_client_secret = ""
        client = _client(settings, lambda r: httpx.Response(200, json={"access_token": "x"}))

        with pytest.raises(ProviderError, match="not configured"):
            await client.authenticate()

    @pytest.mark.asyncio
    async def test_transport_error_becomes_provider_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError) as exc_info:
            await _client(settings, handler).authenticate()

        assert exc_info.value.status_code == 0

    @pytest.mark.asyncio
    async def test_timeout_maps_to_504(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ProviderError) as exc_info:
            await _client(settings, handler).authenticate()

        assert exc_info.value.status_code == 504


class TestEnvelopeState:

    @pytest.mark.asyncio
    async def test_parses_signers_and_documents(self, settings):
        body = {
            "uuid": "env-1",
            "status": "completed",
            "signers": [
                {"signerNonce": "n1", "email": "a@example.com", "status": "COMPLETED",
                 "signedAt": "2024-03-10T14:30:00Z"},
                {"nonce": "n2", "email": "b@example.com", "signatureStatus": "PENDING"},
            ],
            "documents": [{"documentUuid": "d1", "name": "Contrato.pdf"}],
        }

        def handler(request):
            assert request.headers["Authorization"] == "Bearer tok"
            assert str(request.url) == f"{API}/signatures/env-1"
            return httpx.Response(200, json=body)

        state = await _client(settings, handler).get_envelope_state("env-1", token="tok")

        assert state.is_completed
        assert [s.nonce for s in state.completed_signers] == ["n1"]
        assert state.signers[1].status == "PENDING"
        assert state.documents[0].document_id == "d1"

    @pytest.mark.asyncio
    async def test_falls_back_to_status_endpoint(self, settings):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"signatureStatus": "IN_PROGRESS", "subscribers": []})
            return httpx.Response(404, json={"message": "not found"})

        state = await _client(settings, handler).get_envelope_state("env-9", token="tok")

        assert paths[-1].endswith("/signatures/env-9/status")
        assert state.status == "IN_PROGRESS"
        assert state.envelope_id == "env-9"

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried_on_status(self, settings):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(500, text="boom")

        with pytest.raises(ProviderError) as exc_info:
            await _client(settings, handler).get_envelope_state("env-1", token="tok")

        assert exc_info.value.status_code == 500
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_authenticates_when_no_token_given(self, settings):
        def handler(request):
            if str(request.url) == AUTH_URL:
                return httpx.Response(200, json={"access_token": "fresh"})
            assert request.headers["Authorization"] == "Bearer fresh"
            return httpx.Response(200, json={"uuid": "env-1", "status": "IN_PROGRESS"})

        state = await _client(settings, handler).get_envelope_state("env-1")

        assert state.status == "IN_PROGRESS"


class TestDownloads:

    @pytest.mark.asyncio
    async def test_signed_document_bytes(self, settings):
        def handler(request):
            assert request.url.path.endswith("/signatures/env-1/documents/d1/signed")
            return httpx.Response(200, content=b"%PDF-signed")

        data = await _client(settings, handler).download_signed_document("env-1", "d1", token="tok")

        assert data == b"%PDF-signed"

    @pytest.mark.asyncio
    async def test_unified_report(self, settings):
        def handler(request):
            assert request.url.path.endswith("/signatures/env-1/documents/d1/reportUnified")
            assert request.headers["Accept"] == "application/pdf"
            return httpx.Response(200, content=b"%PDF-report")

        data = await _client(settings, handler).download_unified_report("env-1", "d1", token="tok")

        assert data == b"%PDF-report"

    @pytest.mark.asyncio
    async def test_missing_document(self, settings):
        client = _client(settings, lambda r: httpx.Response(404, text="missing"))

        with pytest.raises(ProviderError) as exc_info:
            await client.download_signed_document("env-1", "d1", token="tok")

        assert exc_info.value.status_code == 404


class TestCreateEnvelope:

    @pytest.mark.asyncio
    async def test_payload_and_links(self, settings):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "uuid": "env-new",
                "documents": [{"documentUuid": "doc-a"}, {"uuid": "doc-b"}],
                "signers": [
                    {"email": "a@example.com", "link": {"href": "https://easysign.hom.bry.com.br/pt-br/env-new/sign/n-a"}},
                    {"email": "b@example.com", "signerNonce": "n-b"},
                ],
            })

        created = await _client(settings, handler).create_envelope(
            title="Contrato",
            signers=[
                {"name": "Alice", "email": "a@example.com", "phone": "(11) 98765-4321"},
                {"name": "Bruno", "email": "b@example.com", "phone": None},
            ],
            documents=[b"%PDF-1", b"%PDF-2"],
            auth_options=["IP", "OTP_EMAIL"],
            signature_mode="ADVANCED",
            token="tok",
        )

        body = captured["body"]
        assert body["name"] == "Contrato"
        assert body["signatureConfig"] == {"mode": "ADVANCED"}
        assert body["signersData"][0]["phone"] == "+5511987654321"
        assert "phone" not in body["signersData"][1]
        assert body["signersData"][0]["authenticationOptions"] == ["IP", "OTP_EMAIL"]
        assert base64.b64decode(body["documents"][1]["base64Document"]) == b"%PDF-2"

        assert created.envelope_id == "env-new"
        assert created.document_ids == ["doc-a", "doc-b"]
        assert created.signer_links[0].nonce == "n-a"
        assert created.signer_links[1].link == "https://easysign.hom.bry.com.br/sign/n-b"

    @pytest.mark.asyncio
    async def test_response_without_uuid(self, settings):
        client = _client(settings, lambda r: httpx.Response(200, json={"documents": []}))

        with pytest.raises(ProviderError, match="Unexpected create_envelope response"):
            await client.create_envelope("T", [], [b"x"], [], "ADVANCED", token="tok")


class TestRegisterWebhook:

    @pytest.mark.asyncio
    async def test_registers_url(self, settings):
        def handler(request):
            assert json.loads(request.content) == {
                "urlEndpoint": "https://api.example.com/v1/bry/webhook",
                "webhookType": "easy.signature",
            }
            return httpx.Response(200, json={"id": "wh-1"})

        response = await _client(settings, handler).register_webhook(
            "https://api.example.com/v1/bry/webhook", token="tok"
        )

        assert response == {"id": "wh-1"}

    @pytest.mark.asyncio
    async def test_non_json_response(self, settings):
        client = _client(settings, lambda r: httpx.Response(204))

        response = await client.register_webhook("https://x", token="tok")

        assert response["status"] == 204
