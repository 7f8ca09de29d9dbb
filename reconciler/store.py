from uuid import uuid4

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from reconciler.models import Document

logger = structlog.get_logger(__name__)

# drafts.<id> is a working copy stored beside the published <id>
DRAFT_PREFIX = "drafts."


class DocumentNotFound(LookupError):
    pass


class DuplicateDocument(ValueError):
    pass


def is_draft(doc_id: str) -> bool:
    return doc_id.startswith(DRAFT_PREFIX)


def resolve_alias_ids(doc_id: str) -> list[str]:
    """Return ``[doc_id, alias]`` where alias toggles the draft prefix."""
    if not doc_id:
        return []
    if is_draft(doc_id):
        return [doc_id, doc_id[len(DRAFT_PREFIX):]]
    return [doc_id, f"{DRAFT_PREFIX}{doc_id}"]


def _session_key_for(doc_id: str, doc_type: str, data: dict) -> str | None:
    if doc_type != "order" or is_draft(doc_id):
        return None
    return data.get("sessionId") or None


def _to_dict(row: Document) -> dict:
    return {**(row.data or {}), "_id": row.id, "_type": row.doc_type}


class Patch:
    def __init__(self, store: "DocumentStore", doc_id: str):
        self.store = store
        self.doc_id = doc_id
        self._set: dict = {}
        self._set_if_missing: dict = {}
        self._unset: list[str] = []

    def set(self, fields: dict) -> "Patch":
        self._set.update(fields)
        return self

    def set_if_missing(self, fields: dict) -> "Patch":
        self._set_if_missing.update(fields)
        return self

    def unset(self, keys) -> "Patch":
        self._unset.extend(keys)
        return self

    def commit(self) -> dict:
        return self.store._apply_patch(self)


class DocumentStore:
    def __init__(self, session: Session):
        self.session = session

    def close(self) -> None:
        self.session.close()

    def recover(self) -> None:
        self.session.rollback()

    # -- reads -------------------------------------------------------------

    def get(self, doc_id: str) -> dict | None:
        row = self.session.get(Document, doc_id)
        return _to_dict(row) if row else None

    def find_order_by_session_id(self, session_id: str) -> dict | None:
        row = (
            self.session.query(Document)
            .filter(Document.doc_type == "order", Document.session_key == session_id)
            .first()
        )
        return _to_dict(row) if row else None

    def find_customer_id_by_email(self, email: str) -> str | None:
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        row = (
            self.session.query(Document.id)
            .filter(
                Document.doc_type == "customer",
                func.lower(Document.data["email"].as_string()) == normalized,
            )
            .order_by(Document.id)
            .first()
        )
        return row[0] if row else None

    def find_products(self, skus, titles) -> list[dict]:
        skus = sorted({s for s in skus if s})
        titles = sorted({t for t in titles if t})
        if not skus and not titles:
            return []
        rows = (
            self.session.query(Document)
            .filter(
                Document.doc_type == "product",
                or_(
                    Document.data["sku"].as_string().in_(skus),
                    Document.data["title"].as_string().in_(titles),
                ),
            )
            .order_by(Document.id)
            .all()
        )
        return [_to_dict(row) for row in rows]

    def count_order_number(self, number: str) -> int:
        return (
            self.session.query(Document)
            .filter(
                Document.doc_type.in_(["order", "invoice"]),
                or_(
                    Document.data["orderNumber"].as_string() == number,
                    Document.data["invoiceNumber"].as_string() == number,
                ),
            )
            .count()
        )

    # -- writes ------------------------------------------------------------

    def create(self, doc: dict) -> dict:
        data = {k: v for k, v in doc.items() if k not in ("_id", "_type")}
        doc_type = doc["_type"]
        doc_id = doc.get("_id") or uuid4().hex
        row = Document(
            id=doc_id,
            doc_type=doc_type,
            session_key=_session_key_for(doc_id, doc_type, data),
            data=data,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateDocument(f"{doc_type} {doc_id} already exists") from exc
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.debug("document_created", doc_id=doc_id, doc_type=doc_type)
        return _to_dict(row)

    def patch(self, doc_id: str) -> Patch:
        return Patch(self, doc_id)

    def _apply_patch(self, patch: Patch) -> dict:
        row = self.session.get(Document, patch.doc_id)
        if row is None:
            raise DocumentNotFound(patch.doc_id)

        data = dict(row.data or {})
        for key, value in patch._set_if_missing.items():
            data.setdefault(key, value)
        data.update(patch._set)
        for key in patch._unset:
            data.pop(key, None)

        # JSON columns are not mutation-tracked, so assign a new object
        row.data = data
        row.session_key = _session_key_for(row.id, row.doc_type, data)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateDocument(f"{row.doc_type} {row.id} collides on session key") from exc
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.debug("document_patched", doc_id=row.id, fields=sorted(patch._set))
        return _to_dict(row)


def patch_first_successful(store: DocumentStore, ids, fields: dict) -> str | None:
    """Apply ``fields`` to the first id in ``ids`` that accepts the patch.

    Returns the id that was patched, or None when every variant failed.
    """
    for doc_id in ids:
        try:
            store.patch(doc_id).set(fields).commit()
        except DocumentNotFound:
            logger.debug("patch_variant_missing", doc_id=doc_id)
            continue
        except Exception as exc:
            logger.warning("patch_variant_failed", doc_id=doc_id, error=str(exc))
            continue
        return doc_id
    return None
