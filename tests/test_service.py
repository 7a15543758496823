"""
Tests for the document verification workflow service.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from docverify.client import DocumentVerificationClient
from docverify.polling.models import PollingStatus
from docverify.polling.scheduler import PollingScheduler
from docverify.schemas import DocumentUploadResult
from docverify.service import DocumentVerificationService


class TestDocumentVerificationService:
    """Test upload-then-poll orchestration."""

    @pytest.fixture(autouse=True)
    def _setup(self, live_store, polling_config):
        self.store = live_store
        self.client = AsyncMock(spec=DocumentVerificationClient)
        self.client.upload_document.side_effect = [
            DocumentUploadResult(document_id="doc-1"),
            DocumentUploadResult(document_id="doc-2"),
        ]
        self.scheduler = PollingScheduler(
            live_store, self.client.get_verification_status, polling_config
        )
        self.service = DocumentVerificationService(self.client, self.scheduler)

    @pytest.mark.asyncio
    async def test_submit_and_wait(self, result_factory):
        """Test submit and wait."""
        self.client.get_verification_status.side_effect = [
            result_factory("pending"),
            result_factory("verified"),
        ]

        document_id, session_id = await self.service.submit_document(
            "passport.jpg", b"data", "passport", "form-1"
        )
        session, result = await self.service.wait_for_result(document_id, 2)

        assert document_id == "doc-1"
        assert session.session_id == session_id
        assert session.status is PollingStatus.COMPLETED
        assert result.verification_status == "verified"
        self.client.upload_document.assert_awaited_once_with(
            "passport.jpg", b"data", "passport", "form-1"
        )

    @pytest.mark.asyncio
    async def test_all_settled_gates_navigation(self, result_factory):
        """Test all settled gates navigation."""
        self.client.get_verification_status.side_effect = lambda document_id: (
            result_factory("verified", documentId=document_id)
        )

        first, _ = await self.service.submit_document(
            "passport.jpg", b"a", "passport", "form-1"
        )
        second, _ = await self.service.submit_document(
            "license.jpg", b"b", "driver_license", "form-1"
        )
        assert self.service.all_settled([first, second]) is False

        sessions = await self.service.wait_all_settled([first, second], timeout_s=2)

        assert [s.status for s in sessions] == [PollingStatus.COMPLETED] * 2
        assert self.service.all_settled([first, second]) is True

    def test_all_settled_for_untracked_documents(self):
        """Test all settled for untracked documents."""
        assert self.service.all_settled(["unknown"]) is True

    @pytest.mark.asyncio
    async def test_wait_all_settled_times_out(self, polling_config):
        """Test that waiting on a document still polling raises on timeout."""
        config = polling_config.model_copy(update={"initial_delay_ms": 10000})
        document_id, _ = await self.service.submit_document(
            "passport.jpg", b"a", "passport", "form-1", config
        )

        with pytest.raises(asyncio.TimeoutError):
            await self.service.wait_all_settled([document_id], timeout_s=0.01)

        assert self.service.all_settled([document_id]) is False
        await self.scheduler.aclose()
