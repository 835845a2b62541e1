"""
Local snapshot store.

Persists one JSON blob per collection in a small SQLAlchemy-backed key-value
table. Reads never raise: a missing or corrupted blob yields an empty
collection. Write failures surface as ``LocalStorageError``.
"""
import json
import logging
from typing import List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..core.errors import LocalStorageError
from ..models.base import Base, create_store_engine, make_session_factory, utcnow
from ..models.record import Record
from ..models.snapshot import CollectionSnapshot

logger = logging.getLogger(__name__)

_records_adapter = TypeAdapter(List[Record])


class LocalStore:
    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, key_prefix: str = "loveSite"):
        if engine is None:
            engine = create_store_engine(url or "sqlite:///./lovesite.db")
        self.engine = engine
        self.key_prefix = key_prefix
        self.SessionLocal = make_session_factory(engine)
        Base.metadata.create_all(bind=engine)

    def key_for(self, collection: str) -> str:
        return f"{self.key_prefix}{collection}"

    def load(self, collection: str) -> List[Record]:
        """Read the stored snapshot for ``collection``; empty when absent or unreadable."""
        key = self.key_for(collection)
        db = self.SessionLocal()
        try:
            row = db.get(CollectionSnapshot, key)
            payload = row.payload if row is not None else None
        except SQLAlchemyError as exc:
            logger.warning("Failed to read local %s data: %s", collection, exc)
            return []
        finally:
            db.close()

        if not payload:
            return []
        try:
            records = _records_adapter.validate_json(payload)
        except ValidationError as exc:
            logger.warning("Discarding malformed local %s data (%d errors)", collection, exc.error_count())
            return []
        logger.debug("Loaded local %s data: %d items", collection, len(records))
        return records

    def save(self, collection: str, records: Sequence[Record]) -> None:
        """Overwrite the stored snapshot for ``collection``."""
        key = self.key_for(collection)
        payload = json.dumps(
            [record.model_dump(mode="json") for record in records],
            ensure_ascii=False,
        )
        db = self.SessionLocal()
        try:
            row = db.get(CollectionSnapshot, key)
            if row is None:
                row = CollectionSnapshot(key=key)
                db.add(row)
            row.payload = payload
            row.record_count = len(records)
            row.updated_at = utcnow()
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Failed to save local %s data: %s", collection, exc)
            raise LocalStorageError(f"Failed to save local {collection} data: {exc}") from exc
        finally:
            db.close()
        logger.debug("Saved local %s data: %d items", collection, len(records))

    def close(self) -> None:
        self.engine.dispose()
