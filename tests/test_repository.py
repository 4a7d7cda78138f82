"""
Tests for the Supabase repository: preconditions go into the filter chain
and a write counts only when a row came back.
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from app.models import EnvelopeStatus
from app.repository import DOCUMENTS_TABLE, SIGNERS_TABLE, EnvelopeRepository


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def repo(client):
    return EnvelopeRepository(settings=MagicMock(), client=client)


def _table(client):
    return client.table.return_value


class TestReads:

    def test_get_envelope_maps_columns(self, repo, client):
        _table(client).select.return_value.eq.return_value.limit.return_value.execute.return_value.data = [{
            "id": "doc-1",
            "name": "Contrato.pdf",
            "status": "in_progress",
            "signed_by": None,
            "signers": 2,
            "bry_envelope_uuid": "env-1",
            "signature_mode": "advanced",
        }]

        envelope = repo.get_envelope("doc-1")

        client.table.assert_called_with(DOCUMENTS_TABLE)
        assert envelope.document_id == "doc-1"
        assert envelope.status == EnvelopeStatus.PENDING
        assert envelope.signed_count == 0
        assert envelope.total_signers == 2
        assert envelope.provider_envelope_id == "env-1"
        assert envelope.signature_mode.value == "ADVANCED"

    def test_get_envelope_missing(self, repo, client):
        _table(client).select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []

        assert repo.get_envelope("nope") is None

    def test_count_signed_uses_exact_count(self, repo, client):
        chain = _table(client).select.return_value.eq.return_value.eq.return_value
        chain.execute.return_value.count = 3

        assert repo.count_signed("doc-1") == 3
        client.table.assert_called_with(SIGNERS_TABLE)
        _table(client).select.assert_called_with("id", count="exact")

    def test_sweep_candidates_filters(self, repo, client):
        not_ = _table(client).select.return_value.not_
        chain = not_.is_.return_value.neq.return_value.or_.return_value.order.return_value.limit.return_value
        chain.execute.return_value.data = [{"id": "doc-1", "bry_envelope_uuid": "env-1"}]

        candidates = repo.select_sweep_candidates(25, 10)

        assert [c.document_id for c in candidates] == ["doc-1"]
        not_.is_.assert_called_with("bry_envelope_uuid", "null")
        not_.is_.return_value.neq.assert_called_with("status", "signed")
        not_.is_.return_value.neq.return_value.or_.assert_called_with(
            "artifact_fetch_attempts.lt.10,artifact_fetch_attempts.is.null"
        )
        not_.is_.return_value.neq.return_value.or_.return_value.order.assert_called_with("created_at", desc=True)
        not_.is_.return_value.neq.return_value.or_.return_value.order.return_value.limit.assert_called_with(25)


class TestConditionalWrites:

    def test_mark_signer_signed_only_from_pending(self, repo, client):
        update = _table(client).update
        update.return_value.eq.return_value.neq.return_value.execute.return_value.data = [{"id": "s1"}]
        signed_at = datetime(2024, 3, 10, 14, 30, tzinfo=timezone.utc)

        assert repo.mark_signer_signed("s1", signed_at, {"signature_ip": "1.2.3.4"}) is True

        update.assert_called_with({
            "signature_ip": "1.2.3.4",
            "status": "signed",
            "signed_at": "2024-03-10T14:30:00+00:00",
        })
        update.return_value.eq.return_value.neq.assert_called_with("status", "signed")

    def test_mark_signer_signed_loses_race(self, repo, client):
        _table(client).update.return_value.eq.return_value.neq.return_value.execute.return_value.data = []

        assert repo.mark_signer_signed("s1", datetime.now(timezone.utc)) is False

    def test_signed_count_only_increases(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.or_.return_value.execute.return_value.data = [{"id": "doc-1"}]

        assert repo.update_signed_count("doc-1", 2) is True
        chain.or_.assert_called_with("signed_by.lt.2,signed_by.is.null")

    def test_correct_signed_count_compares_expected(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.eq.return_value.execute.return_value.data = []

        assert repo.correct_signed_count("doc-1", 5, 2) is False
        chain.eq.assert_called_with("signed_by", 5)

    def test_mark_envelope_signed_requires_artifact(self, repo, client):
        with pytest.raises(ValueError):
            repo.mark_envelope_signed("doc-1", "", 2)
        _table(client).update.assert_not_called()

    def test_mark_envelope_signed_writes_status_and_artifact_together(self, repo, client):
        update = _table(client).update
        update.return_value.eq.return_value.neq.return_value.execute.return_value.data = [{"id": "doc-1"}]

        assert repo.mark_envelope_signed("doc-1", "u/doc-1_signed.pdf", 2) is True

        values = update.call_args.args[0]
        assert values["status"] == "signed"
        assert values["bry_signed_file_url"] == "u/doc-1_signed.pdf"
        assert values["signed_by"] == 2
        assert values["completion_notified_at"]
        update.return_value.eq.return_value.neq.assert_called_with("status", "signed")

    def test_provider_envelope_id_is_write_once(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.is_.return_value.execute.return_value.data = []

        assert repo.set_provider_envelope_id("doc-1", "env-2") is False
        chain.is_.assert_called_with("bry_envelope_uuid", "null")

    def test_release_provider_envelope_id_only_from_that_envelope(self, repo, client):
        update = _table(client).update
        update.return_value.eq.return_value.eq.return_value.execute.return_value.data = []

        assert repo.release_provider_envelope_id("doc-1", "env-new") is False
        update.assert_called_with({"bry_envelope_uuid": None, "bry_document_uuid": None})
        update.return_value.eq.return_value.eq.assert_called_with("bry_envelope_uuid", "env-new")

    def test_record_artifact_failure_first_attempt(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.or_.return_value.execute.return_value.data = [{"id": "doc-1"}]

        assert repo.record_artifact_failure("doc-1", 0, "x" * 900) == 1

        values = _table(client).update.call_args.args[0]
        assert values["artifact_fetch_attempts"] == 1
        assert len(values["artifact_last_error"]) == 500
        chain.or_.assert_called_with("artifact_fetch_attempts.eq.0,artifact_fetch_attempts.is.null")

    def test_record_artifact_failure_later_attempt(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.eq.return_value.execute.return_value.data = []

        assert repo.record_artifact_failure("doc-1", 4, "boom") == 5
        chain.eq.assert_called_with("artifact_fetch_attempts", 4)

    def test_swap_stamped_file_from_original(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.is_.return_value.execute.return_value.data = [{"id": "doc-1"}]

        assert repo.swap_stamped_file("doc-1", None, "u/signed/1.pdf") is True
        chain.is_.assert_called_with("stamped_file_url", "null")

    def test_swap_stamped_file_compares_current(self, repo, client):
        chain = _table(client).update.return_value.eq.return_value
        chain.eq.return_value.execute.return_value.data = []

        assert repo.swap_stamped_file("doc-1", "u/signed/1.pdf", "u/signed/2.pdf") is False
        chain.eq.assert_called_with("stamped_file_url", "u/signed/1.pdf")

    def test_save_signer_link_without_data(self, repo, client):
        assert repo.save_signer_link("s1", None, None) is False
        _table(client).update.assert_not_called()
