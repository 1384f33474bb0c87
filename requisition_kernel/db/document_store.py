"""
Module: requisition_kernel.db.document_store
Responsibility: Uniform collection/document interface over the ``documents``
    table: get, set (replace or merge), update, delete, add, equality query
    and full scan.  Every body written passes through ``sanitize`` and every
    key through ``document_key``.
Architecture position: Kernel > DB.  Used by every kernel service.  Never
    commits; the caller's ``session_scope()`` owns the transaction.

Invariants enforced:
    - Document keys never contain ``/`` (substituted with ``_``, one way).
      Services that must recover the original identifier keep it in the body.
    - A write carrying ``expected_version`` is applied only if the stored
      version equals it; otherwise ConflictError and nothing is applied.
    - Every UPDATE is a compare-and-swap on the row version, so two writers
      that read the same version cannot both succeed.

Failure modes:
    - ConflictError on a stale expected_version, a lost CAS race, or a
      lost race to create the same key.
    - DocumentNotFoundError from update() on a missing document.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from requisition_kernel.db.models import DocumentRecord
from requisition_kernel.exceptions import ConflictError, DocumentNotFoundError
from requisition_kernel.logging_config import get_logger
from requisition_kernel.utils.serialization import sanitize

logger = get_logger("db.document_store")


def document_key(identifier: Any) -> str:
    """Map an external identifier to a storable key (``/`` becomes ``_``)."""
    return str(identifier).strip().replace("/", "_")


@dataclass
class Document:
    """A detached snapshot of one stored document."""

    collection: str
    key: str
    body: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def get(self, name: str, default: Any = None) -> Any:
        return self.body.get(name, default)

    @property
    def version_token(self) -> str:
        return str(self.version)


class DocumentStore:
    """
    Document operations bound to one session.

    Contract:
        Receives a Session whose transaction the caller controls.  Methods
        flush so that version numbers and constraint violations surface
        immediately, but never commit.

    Guarantees:
        - Returned ``Document`` bodies are deep copies; mutating them does
          not touch the session.
        - ``set`` and ``update`` always advance the version by one.
    """

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: str, key: Any) -> Document | None:
        record = self._load(collection, key)
        return _snapshot(record) if record is not None else None

    def get_for_update(self, collection: str, key: Any) -> Document | None:
        """Read with a row lock held until the transaction ends."""
        record = self._load(collection, key, for_update=True)
        return _snapshot(record) if record is not None else None

    def query_equal(self, collection: str, field_name: str, value: Any) -> list[Document]:
        """Documents in ``collection`` whose top-level ``field_name`` equals ``value``."""
        return [
            doc for doc in self.scan_all(collection)
            if doc.body.get(field_name) == value
        ]

    def scan_all(self, collection: str) -> list[Document]:
        records = self._session.execute(
            select(DocumentRecord)
            .where(DocumentRecord.collection == collection)
            .order_by(DocumentRecord.doc_key)
        ).scalars().all()
        return [_snapshot(record) for record in records]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(
        self,
        collection: str,
        key: Any,
        value: dict[str, Any],
        merge: bool = False,
        expected_version: int | None = None,
    ) -> Document:
        """
        Create or overwrite a document.

        Args:
            collection: Collection name.
            key: External identifier (substituted by ``document_key``).
            value: New body, or the fields to merge when ``merge`` is True.
            merge: Shallow-merge ``value`` into the existing body.
            expected_version: If given, the stored version must equal it.
                A missing document only matches ``expected_version=0``.

        Raises:
            ConflictError: Stale expected_version or lost CAS race.
        """
        doc_key = document_key(key)
        clean = sanitize(dict(value))
        record = self._load(collection, doc_key, for_update=expected_version is not None)

        if record is None:
            if expected_version not in (None, 0):
                raise ConflictError(collection, doc_key, server_version=None)
            record = DocumentRecord(collection=collection, doc_key=doc_key, body=clean)
            self._session.add(record)
            self._flush(collection, doc_key)
            logger.debug(
                "document_created",
                extra={"collection": collection, "doc_key": doc_key},
            )
            return _snapshot(record)

        self._check_version(record, expected_version)
        body = {**record.body, **clean} if merge else clean
        return self._write(record, body)

    def update(
        self,
        collection: str,
        key: Any,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> Document:
        """
        Merge top-level fields into an existing document.

        Raises:
            DocumentNotFoundError: The document does not exist.
            ConflictError: Stale expected_version or lost CAS race.
        """
        doc_key = document_key(key)
        record = self._load(collection, doc_key, for_update=expected_version is not None)
        if record is None:
            raise DocumentNotFoundError(collection, doc_key)
        self._check_version(record, expected_version)
        return self._write(record, {**record.body, **sanitize(dict(fields))})

    def add(self, collection: str, value: dict[str, Any]) -> Document:
        """Insert a document under a generated key."""
        return self.set(collection, uuid4().hex, value)

    def delete(self, collection: str, key: Any) -> bool:
        """Delete a document.  Returns False if it did not exist."""
        doc_key = document_key(key)
        record = self._load(collection, doc_key)
        if record is None:
            return False
        self._session.delete(record)
        self._flush(collection, doc_key)
        logger.debug(
            "document_deleted",
            extra={"collection": collection, "doc_key": doc_key},
        )
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(
        self, collection: str, key: Any, for_update: bool = False
    ) -> DocumentRecord | None:
        stmt = select(DocumentRecord).where(
            DocumentRecord.collection == collection,
            DocumentRecord.doc_key == document_key(key),
        )
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _check_version(self, record: DocumentRecord, expected_version: int | None) -> None:
        if expected_version is None:
            return
        if int(record.version) != int(expected_version):
            logger.warning(
                "document_version_conflict",
                extra={
                    "collection": record.collection,
                    "doc_key": record.doc_key,
                    "expected_version": expected_version,
                    "server_version": record.version,
                },
            )
            raise ConflictError(
                record.collection, record.doc_key, server_version=str(record.version)
            )

    def _write(self, record: DocumentRecord, body: dict[str, Any]) -> Document:
        record.body = body
        # JSON equality would otherwise skip the UPDATE and the version bump.
        flag_modified(record, "body")
        self._flush(record.collection, record.doc_key)
        return _snapshot(record)

    def _flush(self, collection: str, doc_key: str) -> None:
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "document_cas_lost",
                extra={"collection": collection, "doc_key": doc_key},
            )
            raise ConflictError(collection, doc_key, server_version=None) from exc
        except IntegrityError as exc:
            # Concurrent insert of the same (collection, doc_key).
            logger.warning(
                "document_insert_race_lost",
                extra={"collection": collection, "doc_key": doc_key},
            )
            raise ConflictError(collection, doc_key, server_version=None) from exc


def _snapshot(record: DocumentRecord) -> Document:
    return Document(
        collection=record.collection,
        key=record.doc_key,
        body=copy.deepcopy(record.body or {}),
        version=int(record.version),
    )
