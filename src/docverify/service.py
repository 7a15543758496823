"""
Document verification workflow: upload, track, gate.
"""

import asyncio

import structlog

from .client import DocumentVerificationClient
from .config import PollingConfig
from .polling.models import PollingSession
from .polling.scheduler import PollingScheduler
from .schemas import VerificationResult

logger = structlog.get_logger(__name__)


class DocumentVerificationService:
    """
    Coordinates the API client and the polling scheduler.

    Documents are uploaded through the client, then tracked until the
    analysis backend settles their verification.
    """

    def __init__(
        self, client: DocumentVerificationClient, scheduler: PollingScheduler
    ) -> None:
        self.client = client
        self.scheduler = scheduler

    async def submit_document(
        self,
        file_name: str,
        content: bytes,
        document_type: str,
        form_id: str,
        config: PollingConfig | None = None,
    ) -> tuple[str, str]:
        """
        Upload a document and start polling its verification.

        Returns:
            Tuple of (document_id, session_id)
        """
        upload = await self.client.upload_document(
            file_name, content, document_type, form_id
        )
        session_id = self.scheduler.start(upload.document_id, document_type, config)

        logger.info(
            "Document submitted for verification",
            document_id=upload.document_id,
            session_id=session_id,
            form_id=form_id,
        )
        return upload.document_id, session_id

    async def wait_for_result(
        self, document_id: str, timeout_s: float | None = None
    ) -> tuple[PollingSession | None, VerificationResult | None]:
        """
        Wait for a document's polling to finish.

        Returns:
            Final session and the latest verification result (None when the
            session ended without one)
        """
        session = await self.scheduler.wait_until_settled(document_id, timeout_s)
        return session, self.scheduler.get_latest_result(document_id)

    def all_settled(self, document_ids: list[str]) -> bool:
        """True when no listed document still has an active polling session."""
        return not any(
            self.scheduler.store.is_polling_active(document_id)
            for document_id in document_ids
        )

    async def wait_all_settled(
        self, document_ids: list[str], timeout_s: float | None = None
    ) -> list[PollingSession | None]:
        """Wait until every listed document's session is terminal."""
        return await asyncio.wait_for(
            asyncio.gather(
                *(
                    self.scheduler.wait_until_settled(document_id)
                    for document_id in document_ids
                )
            ),
            timeout_s,
        )
