"""Document verification and text extraction capabilities."""

import hashlib
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from docvault.core.exceptions import (
    APIClientError,
    APITimeoutError,
    VerificationError,
    VerificationUnavailableError,
)
from docvault.schemas.vault import VerificationProof
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


class VerificationProvider(Protocol):
    """Attests a document's content and returns an opaque proof.

    Implementations raise ``VerificationError`` when the document is
    rejected; any other exception is treated as transient and retried.
    """

    async def verify(self, content: bytes, prior_proof: Optional[str] = None) -> VerificationProof:
        ...


class TextExtractionProvider(Protocol):
    """Extracts text from document content (OCR or parsing)."""

    async def extract_text(self, content: bytes, mime_type: str) -> str:
        ...


class HttpVerificationProvider:
    """Verification service reached over HTTP.

    Sends the content hash and the prior proof; expects
    ``{"status": "verified" | "rejected", "proof": ..., "timestamp": ...}``.
    """

    def __init__(self, url: str, api_key: str = "", timeout: float = 60.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def verify(self, content: bytes, prior_proof: Optional[str] = None) -> VerificationProof:
        payload = {
            "sha256": hashlib.sha256(content).hexdigest(),
            "prior_proof": prior_proof,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            raise APITimeoutError(f"Verification timed out after {self.timeout}s", original_error=e) from e
        except httpx.HTTPError as e:
            raise APIClientError(f"Verification request failed: {str(e)}", original_error=e) from e

        if response.status_code != 200:
            LOGGER.error(
                f"Verification service error: {response.text}",
                extra={"status_code": response.status_code},
            )
            raise APIClientError(f"Verification service returned {response.status_code}")

        data = response.json()
        if data.get("status") != "verified":
            raise VerificationError(f"Document rejected: {data.get('reason', 'no reason given')}")

        timestamp = data.get("timestamp")
        return VerificationProof(
            proof=data["proof"],
            timestamp=timestamp or datetime.now(timezone.utc),
        )


async def verify_with_retry(
    provider: VerificationProvider,
    content: bytes,
    prior_proof: Optional[str] = None,
    max_attempts: int = 3,
    wait: Optional[wait_base] = None,
) -> VerificationProof:
    """Call a provider, retrying transient failures with exponential backoff.

    Raises:
        VerificationError: If the provider rejects the document
        VerificationUnavailableError: Once retries run out
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait or wait_exponential(multiplier=1, min=1, max=8),
            retry=retry_if_not_exception_type(VerificationError),
        ):
            with attempt:
                return await provider.verify(content, prior_proof)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        LOGGER.error(
            f"Verification failed after {max_attempts} attempts: {str(last_error)}",
            exc_info=last_error,
        )
        raise VerificationUnavailableError(
            f"Verification failed after {max_attempts} attempts", original_error=last_error
        ) from last_error
