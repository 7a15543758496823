"""
Response models of the document verification API.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PENDING_VERIFICATION_STATUSES = frozenset({"pending", "processing"})


class ApiModel(BaseModel):
    """Base model accepting the API's camelCase payloads."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class VerificationResult(ApiModel):
    """Outcome of one verification status query."""

    document_id: str
    verification_status: str
    confidence_score: float | None = None
    is_blurred: bool = False
    is_correct_type: bool = True
    status_color: str | None = None
    message: str = ""
    requires_user_confirmation: bool = False
    file_name: str | None = None
    document_type: str | None = None
    uploaded_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        """The analysis backend has not produced a verdict yet."""
        return self.verification_status.lower() in PENDING_VERIFICATION_STATUSES

    @property
    def is_settled(self) -> bool:
        return not self.is_pending


class DocumentUploadResult(ApiModel):
    """Response of a document upload."""

    document_id: str
    file_name: str | None = None
    document_type: str | None = None
    verification_status: str = "pending"
    message: str = ""
    uploaded_at: datetime | None = None


class StartPollingRequest(BaseModel):
    """Body of a monitoring request that starts tracking a document."""

    document_type: str = Field(..., min_length=1, description="Expected document type")
