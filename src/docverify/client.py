"""
Document verification API client.

This module talks to the document REST API over httpx and translates
transport failures and HTTP status codes into the status check exception
hierarchy consumed by the polling scheduler.
"""

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from .exceptions import (
    NetworkError,
    NotFoundError,
    ResponseValidationError,
    ServerError,
)
from .schemas import DocumentUploadResult, VerificationResult

logger = structlog.get_logger(__name__)


class DocumentVerificationClient:
    """
    Async client for the document verification endpoints.

    The underlying ``httpx.AsyncClient`` is created once and reused; close it
    with ``aclose()`` or use the client as an async context manager.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Root URL of the document API
            timeout: Request timeout in seconds
            transport: Optional transport (tests use ``httpx.MockTransport``)
        """
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "DocumentVerificationClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def upload_document(
        self,
        file_name: str,
        content: bytes,
        document_type: str,
        form_id: str,
        content_type: str = "application/octet-stream",
    ) -> DocumentUploadResult:
        """
        Upload a document for verification.

        Args:
            file_name: Original file name
            content: Raw file bytes
            document_type: Expected document type (e.g., 'passport')
            form_id: Intake form the document belongs to
            content_type: MIME type of the file

        Returns:
            Upload result carrying the new document id
        """
        response = await self._request(
            "POST",
            "/api/Document/upload",
            files={"file": (file_name, content, content_type)},
            data={"documentType": document_type, "formId": form_id},
        )
        result = self._parse(DocumentUploadResult, response)

        logger.info(
            "Document uploaded",
            document_id=result.document_id,
            document_type=document_type,
            form_id=form_id,
            size=len(content),
        )
        return result

    async def get_verification_status(self, document_id: str) -> VerificationResult:
        """
        Query the verification status of a document.

        Raises:
            NetworkError: The API could not be reached
            ServerError: The API answered with a 5xx status
            NotFoundError: The document is unknown
            ResponseValidationError: Any other rejection or a malformed body
        """
        response = await self._request("GET", f"/api/Document/{document_id}/status")
        return self._parse(VerificationResult, response)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning(
                "Document API unreachable", method=method, path=path, error=str(e)
            )
            raise NetworkError(
                f"Failed to reach document API: {e}",
                context={"method": method, "path": path},
            ) from e

        status_code = response.status_code
        context = {"method": method, "path": path, "status_code": status_code}

        if status_code == 404:
            raise NotFoundError(f"Resource not found: {path}", context=context)
        if status_code >= 500:
            raise ServerError(
                f"Document API error {status_code}: {response.text[:200]}",
                status_code=status_code,
                context=context,
            )
        if status_code >= 400:
            raise ResponseValidationError(
                f"Request rejected with status {status_code}: {response.text[:200]}",
                status_code=status_code,
                context=context,
            )
        return response

    def _parse(self, model: type[Any], response: httpx.Response) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ResponseValidationError(
                f"Malformed response from {response.request.url.path}: {e}",
                status_code=response.status_code,
            ) from e
