"""Database layer: engine lifecycle, the documents table and the document store."""

from requisition_kernel.db.base import Base
from requisition_kernel.db.document_store import Document, DocumentStore, document_key
from requisition_kernel.db.engine import Database
from requisition_kernel.db.models import DocumentRecord

__all__ = [
    "Base",
    "Database",
    "Document",
    "DocumentRecord",
    "DocumentStore",
    "document_key",
]
