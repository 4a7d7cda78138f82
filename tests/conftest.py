"""
Pytest configuration and fixtures.
"""
import os
import sys
from datetime import datetime, timezone

import pytest

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from tests.fakes import FakeBlobStore, FakeProvider, FakeRepository, RecordingNotifier


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        APP_URL="https://app.example.com",
        ADMIN_API_SECRET="admin-secret",
        INTERNAL_API_SECRET="internal-secret",
        BRY_CLIENT_ID="client-id",
        BRY_CLIENT_SECRET="client-secret",
        BRY_SWEEP_DELAY_SECONDS=0,
        BRY_ARTIFACT_MAX_ATTEMPTS=3,
        GCS_BUCKET="test-bucket",
    )


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reconciler(repository, provider, blob_store, notifier, settings):
    from app.services.reconciler import EnvelopeReconciler
    return EnvelopeReconciler(repository, provider, blob_store, notifier, settings)


@pytest.fixture
def two_signer_envelope(repository):
    """Provider-backed document 'doc-1' in envelope 'env-1' with signers s1 and s2."""
    repository.add_document("doc-1", bry_envelope_uuid="env-1")
    repository.add_signer("s1", "doc-1", name="Alice Souza", email="alice@example.com", bry_signer_nonce="nonce-1")
    repository.add_signer("s2", "doc-1", name="Bruno Lima", email="bruno@example.com", bry_signer_nonce="nonce-2")
    return repository


@pytest.fixture
def signed_at():
    return datetime(2024, 3, 10, 14, 30, 0, tzinfo=timezone.utc)
