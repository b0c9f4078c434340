"""
Document collector — requests the pay stub from the applicant and
accepts the uploaded file.

The applicant receives a single-use secure upload link; the file lands
in encrypted storage outside this service and ``receive_document`` is
called with its bytes for integrity checks.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.clock import Clock
from paystub.core.config import settings
from paystub.core.constants import DocumentStatus
from paystub.core.logging import get_logger
from paystub.db.models.document import Document
from paystub.db.models.work_record import WorkRecord
from paystub.notifications import ChannelSender, NotificationMessage
from paystub.pipeline.errors import DeliveryError, DocumentFormatError, ValidationError
from paystub.repositories import documents, events, jobs, loans

logger = get_logger(__name__)

MIN_DOCUMENT_BYTES = 1024
MAX_DOCUMENT_BYTES = 10 * 1024 * 1024
LINK_TTL = timedelta(hours=24)
ALLOWED_TYPES = ("application/pdf", "image/jpeg", "image/png")

# Leading bytes → content type
_SIGNATURES = {
    b"%PDF": "application/pdf",
    b"\xff\xd8\xff": "image/jpeg",
    b"\x89PNG\r\n\x1a\n": "image/png",
}


@dataclass
class SecureUploadLink:
    token: str
    url: str
    expires_at: datetime
    max_size_bytes: int = MAX_DOCUMENT_BYTES
    allowed_types: tuple[str, ...] = ALLOWED_TYPES


@dataclass
class CollectionRequest:
    document_id: int
    already_requested: bool
    link: SecureUploadLink | None = None
    details: dict = field(default_factory=dict)


def detect_content_type(data: bytes) -> str | None:
    for signature, content_type in _SIGNATURES.items():
        if data.startswith(signature):
            return content_type
    return None


class DocumentCollector:
    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock,
        sender: ChannelSender,
        bucket: str | None = None,
        upload_base_url: str | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.sender = sender
        self.bucket = bucket or settings.DOCUMENT_BUCKET
        self.upload_base_url = (upload_base_url or settings.SECURE_UPLOAD_BASE_URL).rstrip("/")

    async def request_collection(self, record: WorkRecord) -> CollectionRequest:
        """
        Ask the applicant for their pay stub.

        Idempotent: a document past ``requested`` is left alone and no
        second link is sent.
        """
        job = await jobs.get_job(self.db, record.job_id)
        loan = await loans.get_loan(self.db, record.loan_application_id)
        if job is None or loan is None:
            raise ValidationError(
                f"Work record {record.id} has no job or loan application",
                work_record_id=record.id,
            )

        now = self.clock.now()
        document = await documents.get_pay_stub(self.db, loan.id)
        if document is None:
            document = await documents.create_pay_stub(
                self.db,
                loan_application_id=loan.id,
                storage_url=(
                    f"s3://{self.bucket}/{job.organization_id}/{loan.id}/"
                    f"paystub_{now.strftime('%Y%m%d%H%M%S')}.pdf"
                ),
                kms_key_id=f"kms:{settings.KMS_KEY_REGION}:org-{job.organization_id}",
            )

        if document.status != DocumentStatus.REQUESTED:
            logger.info(
                "Pay stub already requested or received",
                work_record_id=record.id,
                document_id=document.id,
                status=document.status,
            )
            return CollectionRequest(document_id=document.id, already_requested=True)

        token = secrets.token_urlsafe(32)
        link = SecureUploadLink(
            token=token,
            url=f"{self.upload_base_url}/{token}",
            expires_at=now + LINK_TTL,
        )
        message = NotificationMessage(
            subject="Pay stub required for your approved loan",
            body=(
                f"Your loan {loan.los_external_id} has been approved. Please upload your most "
                f"recent pay stub (PDF, JPEG or PNG, max 10 MB) here: {link.url}\n"
                f"This link expires at {link.expires_at.isoformat()}."
            ),
            metadata={"document_id": document.id, "expires_at": link.expires_at.isoformat()},
        )
        result = await self.sender.send(loan.applicant_id, message)
        if not result.ok:
            raise DeliveryError(
                f"Could not send upload link to applicant {loan.applicant_id}: {result.error}",
                work_record_id=record.id,
            )

        await documents.update_document(self.db, document, status=DocumentStatus.COLLECTION_SENT)
        await events.record_job_event(
            self.db,
            job,
            record=record,
            event_type="document_collection_initiated",
            phase="locate",
            message=f"Secure upload link sent to applicant {loan.applicant_id} for document {document.id}",
            ts=now,
        )
        logger.info("Pay stub collection initiated", work_record_id=record.id, document_id=document.id)
        return CollectionRequest(
            document_id=document.id,
            already_requested=False,
            link=link,
            details={"expires_at": link.expires_at.isoformat()},
        )

    async def receive_document(self, document_id: int, data: bytes, checksum: str) -> Document:
        """Accept uploaded bytes after checksum, size and signature checks."""
        document = await documents.get_document(self.db, document_id)
        if document is None:
            raise ValidationError(f"Document {document_id} not found")

        digest = hashlib.sha256(data).hexdigest()
        if digest != checksum.lower():
            raise DocumentFormatError(
                f"Checksum mismatch for document {document_id}",
                details={"expected": checksum, "actual": digest},
            )
        size = len(data)
        if not MIN_DOCUMENT_BYTES <= size <= MAX_DOCUMENT_BYTES:
            raise DocumentFormatError(
                f"Document {document_id} is {size} bytes, allowed range is "
                f"{MIN_DOCUMENT_BYTES}..{MAX_DOCUMENT_BYTES}"
            )
        content_type = detect_content_type(data)
        if content_type is None:
            raise DocumentFormatError(f"Document {document_id} is not a PDF, JPEG or PNG file")

        await documents.update_document(
            self.db,
            document,
            status=DocumentStatus.RECEIVED,
            sha256=digest,
            size_bytes=size,
        )
        loan = await loans.get_loan(self.db, document.loan_application_id)
        await events.record_event(
            self.db,
            organization_id=loan.organization_id,
            event_type="document_received",
            phase="collect",
            message=f"Pay stub received for document {document_id} ({content_type}, {size} bytes)",
            ts=self.clock.now(),
        )
        logger.info("Pay stub received", document_id=document_id, size_bytes=size, content_type=content_type)
        return document
