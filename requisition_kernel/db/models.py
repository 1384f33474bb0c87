"""
Module: requisition_kernel.db.models
Responsibility: The single ORM table backing the document store.  Each row is
    one document of one collection; the body is JSON and the version column
    is SQLAlchemy's optimistic-concurrency counter.
Architecture position: Kernel > DB.  Imported by db/document_store.py and by
    Database.create_tables().

Invariants enforced:
    - (collection, doc_key) is unique.
    - version starts at 1 and is incremented by exactly 1 on every UPDATE;
      SQLAlchemy issues ``UPDATE ... WHERE version = :old`` and raises
      StaleDataError when another writer got there first.

Failure modes:
    - IntegrityError on concurrent INSERT of the same (collection, doc_key).
    - StaleDataError on a lost compare-and-swap (converted to ConflictError
      by the store).
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from requisition_kernel.db.base import Base


class DocumentRecord(Base):
    """
    A JSON document keyed by (collection, doc_key).

    Guarantees:
        - ``body`` only ever holds sanitized values (the store sanitizes).
        - ``version`` is a strictly increasing integer per row.
    """

    __tablename__ = "documents"

    __table_args__ = (
        UniqueConstraint("collection", "doc_key", name="uq_documents_collection_key"),
        Index("idx_documents_collection", "collection"),
    )

    collection: Mapped[str] = mapped_column(String(100), nullable=False)
    doc_key: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<DocumentRecord {self.collection}/{self.doc_key} v{self.version}>"
