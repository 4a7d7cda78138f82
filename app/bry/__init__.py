"""
BRy Easy Signature integration package.
Provider client and typed response resolution.
"""
from app.bry.client import BryClient, ProviderError, get_bry_client
from app.bry.responses import (
    CreatedEnvelope,
    ProviderDocument,
    ProviderEnvelopeState,
    ProviderSigner,
)

__all__ = [
    "BryClient",
    "ProviderError",
    "get_bry_client",
    "CreatedEnvelope",
    "ProviderDocument",
    "ProviderEnvelopeState",
    "ProviderSigner",
]
