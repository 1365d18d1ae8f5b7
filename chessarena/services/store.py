import copy
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from chessarena.core.config import settings
from chessarena.core.database import SessionLocal
from chessarena.core.errors import ChessArenaError, ConflictError, NotFoundError, StoreFailureError
from chessarena.models.document import DocumentRecord

logger = logging.getLogger(__name__)

GAMES = "games"
TOURNAMENTS = "tournaments"
USERS = "users"


class StoredDocument(NamedTuple):
    id: str
    version: int
    data: Dict[str, Any]


class DocumentStore:
    """Versioned JSON documents on top of a single SQLAlchemy table.

    Every write bumps ``version``; writers pass the version they read and a
    mismatch means someone else got there first (ConflictError).
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 max_retries: int = settings.STORE_MAX_RETRIES):
        self.session_factory = session_factory
        self.max_retries = max_retries

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except ChessArenaError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Document store operation failed")
            raise StoreFailureError("Storage operation failed", context={"error": e.__class__.__name__}) from e
        finally:
            db.close()

    @staticmethod
    def _to_document(record: DocumentRecord) -> StoredDocument:
        return StoredDocument(id=record.id, version=record.version, data=copy.deepcopy(record.data))

    @staticmethod
    def _new_record(collection: str, doc_id: str, data: Dict[str, Any]) -> DocumentRecord:
        now = datetime.utcnow()
        return DocumentRecord(
            collection=collection,
            id=doc_id,
            version=1,
            status=data.get("status"),
            data=data,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _conditional_update(db: Session, collection: str, doc_id: str,
                            data: Dict[str, Any], expected_version: int) -> int:
        return db.query(DocumentRecord).filter(
            DocumentRecord.collection == collection,
            DocumentRecord.id == doc_id,
            DocumentRecord.version == expected_version,
        ).update({
            DocumentRecord.data: data,
            DocumentRecord.status: data.get("status"),
            DocumentRecord.version: expected_version + 1,
            DocumentRecord.updated_at: datetime.utcnow(),
        }, synchronize_session=False)

    def insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> StoredDocument:
        try:
            with self._session() as db:
                db.add(self._new_record(collection, doc_id, data))
                db.flush()
        except StoreFailureError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ConflictError("Document already exists", context={"collection": collection, "id": doc_id}) from e
            raise
        return StoredDocument(id=doc_id, version=1, data=copy.deepcopy(data))

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        with self._session() as db:
            record = db.query(DocumentRecord).filter(
                DocumentRecord.collection == collection,
                DocumentRecord.id == doc_id,
            ).first()
            return self._to_document(record) if record else None

    def get_many(self, collection: str, ids: Iterable[str]) -> Dict[str, StoredDocument]:
        """Batch lookup; ids that do not resolve are simply absent from the result."""
        wanted = list(dict.fromkeys(i for i in ids if i))
        if not wanted:
            return {}
        with self._session() as db:
            records = db.query(DocumentRecord).filter(
                DocumentRecord.collection == collection,
                DocumentRecord.id.in_(wanted),
            ).all()
            return {r.id: self._to_document(r) for r in records}

    def find(self, collection: str, status: Union[str, Iterable[str], None] = None) -> List[StoredDocument]:
        with self._session() as db:
            query = db.query(DocumentRecord).filter(DocumentRecord.collection == collection)
            if isinstance(status, str):
                query = query.filter(DocumentRecord.status == status)
            elif status is not None:
                query = query.filter(DocumentRecord.status.in_(list(status)))
            records = query.order_by(DocumentRecord.created_at).all()
            return [self._to_document(r) for r in records]

    def replace(self, collection: str, doc_id: str, data: Dict[str, Any], expected_version: int) -> StoredDocument:
        with self._session() as db:
            updated = self._conditional_update(db, collection, doc_id, data, expected_version)
            if updated == 0:
                exists = db.query(DocumentRecord.id).filter(
                    DocumentRecord.collection == collection,
                    DocumentRecord.id == doc_id,
                ).first()
                if exists is None:
                    raise NotFoundError(f"{collection} document not found", context={"id": doc_id})
                raise ConflictError("Document was modified concurrently",
                                    context={"id": doc_id, "expected_version": expected_version})
        return StoredDocument(id=doc_id, version=expected_version + 1, data=copy.deepcopy(data))

    def compare_and_set(self, collection: str, doc_id: str,
                        predicate: Callable[[Dict[str, Any]], bool],
                        mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
                        retries: Optional[int] = None) -> Optional[StoredDocument]:
        """Applies ``mutate`` only while ``predicate`` holds on the current document.

        Returns None when the predicate is false. A version race re-reads the
        document and re-evaluates the predicate, so a write that would no
        longer be valid is never applied.
        """
        attempts = retries if retries is not None else self.max_retries
        for attempt in range(attempts):
            current = self.get(collection, doc_id)
            if current is None:
                raise NotFoundError(f"{collection} document not found", context={"id": doc_id})
            if not predicate(current.data):
                return None
            new_data = mutate(copy.deepcopy(current.data))
            try:
                return self.replace(collection, doc_id, new_data, current.version)
            except ConflictError:
                logger.debug("Version race on %s/%s (attempt %d)", collection, doc_id, attempt + 1)
        raise ConflictError("Too much contention on document", context={"id": doc_id, "attempts": attempts})

    def update(self, collection: str, doc_id: str,
               mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
               retries: Optional[int] = None) -> StoredDocument:
        return self.compare_and_set(collection, doc_id, lambda _: True, mutate, retries)

    def commit(self, inserts: Iterable[Tuple[str, str, Dict[str, Any]]] = (),
               replaces: Iterable[Tuple[str, str, Dict[str, Any], int]] = ()) -> None:
        """Writes several documents in one transaction; any version mismatch aborts all of them."""
        with self._session() as db:
            for collection, doc_id, data in inserts:
                db.add(self._new_record(collection, doc_id, data))
            db.flush()
            for collection, doc_id, data, expected_version in replaces:
                if self._conditional_update(db, collection, doc_id, data, expected_version) == 0:
                    raise ConflictError("Document was modified concurrently",
                                        context={"id": doc_id, "expected_version": expected_version})

    def delete_many(self, collection: str, versions: Dict[str, int]) -> List[str]:
        """Deletes each document only if it still has the given version. Returns the deleted ids."""
        deleted = []
        if not versions:
            return deleted
        with self._session() as db:
            for doc_id, version in versions.items():
                count = db.query(DocumentRecord).filter(
                    DocumentRecord.collection == collection,
                    DocumentRecord.id == doc_id,
                    DocumentRecord.version == version,
                ).delete(synchronize_session=False)
                if count:
                    deleted.append(doc_id)
        return deleted
