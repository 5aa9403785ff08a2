"""
Error taxonomy for the sync engine.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so the
HTTP boundary and the job runner can map it without inspecting messages.
"""

from __future__ import annotations

from typing import Optional


class SyncEngineError(Exception):
    code = "sync_engine_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class CredentialDecryptionError(SyncEngineError):
    """Stored ciphertext is corrupt, truncated or sealed with another key."""

    code = "credential_decryption_failed"


class ProviderAPIError(SyncEngineError):
    """A provider answered with a non-2xx status."""

    code = "provider_api_error"
    retryable = True

    def __init__(
        self,
        provider: str,
        operation: str,
        status_code: int,
        body: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.body = body or ""
        super().__init__(
            f"{provider} {operation} failed: {status_code} {self.body[:500]}".rstrip()
        )


class UnknownProviderError(SyncEngineError):
    code = "unknown_provider"

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class NotFoundError(SyncEngineError):
    """Entity missing or not owned by the caller."""

    code = "not_found"
