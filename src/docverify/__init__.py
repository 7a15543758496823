"""
Document Verification Poller

Tracks asynchronous document verification jobs: uploads identity documents,
polls their verification status with exponential backoff and persists the
polling sessions across reloads.
"""

__version__ = "0.1.0"
__author__ = "Document Verification Team"
__email__ = "support@example.com"

from .client import DocumentVerificationClient
from .config import PollingConfig, Settings
from .exceptions import DocVerifyError
from .polling import PollingScheduler, PollingStateStore
from .service import DocumentVerificationService

__all__ = [
    "Settings",
    "PollingConfig",
    "DocumentVerificationClient",
    "DocumentVerificationService",
    "PollingScheduler",
    "PollingStateStore",
    "DocVerifyError",
]
