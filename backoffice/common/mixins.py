"""
Common mixins for multi-tenant models
"""
from sqlalchemy import Column, DateTime, String, Text, BigInteger
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func


class TenantMixin:
    """Mixin for multi-tenant models that adds tenant_id and ensures tenant isolation"""

    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class FiscalLinkMixin:
    """
    Columns caching the reference to a document held by the fiscal provider.

    The provider is authoritative for status; these columns are only the last
    known snapshot and are repaired by the sync agent.
    """

    document_provider_id = Column(BigInteger, nullable=True, index=True)
    document_type = Column(String(30), nullable=True)
    document_reference = Column(String(100), nullable=True)
    document_status = Column(String(30), nullable=True)
    document_file_url = Column(Text, nullable=True)
    qr_code_url = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    credit_note_provider_id = Column(BigInteger, nullable=True)
    credit_note_reference = Column(String(100), nullable=True)
    document_synced_at = Column(DateTime(timezone=True), nullable=True)
