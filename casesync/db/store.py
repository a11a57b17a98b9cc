"""
Local Persistent Store
======================

get/put of the hierarchical document keyed by owner id. Stored payloads
from older versions (camelCase keys, assistants as objects) are normalized
on read.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..errors import SyncInvariantError
from ..mapping import normalize_app_data
from ..schemas import AppData
from .models import AppDataRecord
from .session import SessionLocal, init_db

logger = logging.getLogger(__name__)


class LocalStore:
    """Key-value store of AppData documents"""

    def __init__(self, database_url: Optional[str] = None):
        self.engine = init_db(database_url)

    def _session(self) -> Session:
        return SessionLocal(bind=self.engine)

    def get(self, owner_id: str) -> Optional[AppData]:
        with self._session() as db:
            record = db.get(AppDataRecord, owner_id)
            if record is None:
                return None
            payload = record.payload
        try:
            return AppData.model_validate(normalize_app_data(payload))
        except ValidationError as e:
            raise SyncInvariantError(f"Stored document for {owner_id} is invalid: {e.errors()[0]['msg']}") from e

    def put(self, owner_id: str, doc: AppData, synced_at: Optional[datetime] = None) -> int:
        """
        Replace the owner's document in one transaction.

        Returns:
            The new revision number
        """
        payload = doc.model_dump(mode="json")
        with self._session() as db:
            with db.begin():
                record = db.get(AppDataRecord, owner_id)
                if record is None:
                    record = AppDataRecord(owner_id=owner_id, payload=payload, revision=1)
                    db.add(record)
                else:
                    record.payload = payload
                    record.revision = (record.revision or 0) + 1
                if synced_at is not None:
                    record.last_synced_at = synced_at
                revision = record.revision
        logger.debug(f"Stored document for {owner_id} (rev {revision})")
        return revision

    def last_synced_at(self, owner_id: str) -> Optional[datetime]:
        with self._session() as db:
            record = db.get(AppDataRecord, owner_id)
            return record.last_synced_at if record else None

    def delete(self, owner_id: str) -> None:
        with self._session() as db:
            with db.begin():
                record = db.get(AppDataRecord, owner_id)
                if record is not None:
                    db.delete(record)
