"""SQLAlchemy model for per-user FHIR resources."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class FhirResource(Base):
    """FHIR resource stored with raw JSON data.

    Rows are addressed by ``(user_id, resource_type, fhir_id)``; the
    document key exposed to callers is ``{resource_type}_{fhir_id}``.
    """

    __tablename__ = "fhir_resources"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owner of the per-user collection
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Identifiers
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    fhir_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_reference: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # The FHIR resource itself, stored as raw JSON
    data: Mapped[dict] = mapped_column(JsonDocument, nullable=False)

    # Metadata
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "resource_type", "fhir_id", name="uq_fhir_user_type_id"),
        Index("idx_fhir_user_type", "user_id", "resource_type"),
    )

    @property
    def document_key(self) -> str:
        return f"{self.resource_type}_{self.fhir_id}"

    def __repr__(self) -> str:
        return f"<FhirResource(user={self.user_id}, key={self.document_key})>"
