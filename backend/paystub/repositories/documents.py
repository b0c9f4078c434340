"""Document repository."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import PAY_STUB_DOCUMENT_TYPE, DocumentStatus
from paystub.db.models.document import Document


async def get_document(db: AsyncSession, document_id: int) -> Document | None:
    return await db.get(Document, document_id)


async def get_pay_stub(db: AsyncSession, loan_application_id: int) -> Document | None:
    """The loan's pay stub document, if one has been requested."""
    stmt = (
        select(Document)
        .where(
            Document.loan_application_id == loan_application_id,
            Document.document_type == PAY_STUB_DOCUMENT_TYPE,
        )
        .order_by(Document.id)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def create_pay_stub(
    db: AsyncSession,
    *,
    loan_application_id: int,
    storage_url: str,
    kms_key_id: str,
) -> Document:
    document = Document(
        loan_application_id=loan_application_id,
        document_type=PAY_STUB_DOCUMENT_TYPE,
        status=DocumentStatus.REQUESTED,
        storage_url=storage_url,
        kms_key_id=kms_key_id,
    )
    db.add(document)
    await db.flush()
    return document


async def update_document(db: AsyncSession, document: Document, **fields: Any) -> Document:
    for key, value in fields.items():
        setattr(document, key, value)
    await db.flush()
    return document
