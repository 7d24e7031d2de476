"""Idempotent upsert of connector payloads into ``external_records``."""

import hashlib
import json
import logging
from typing import Any, Callable, Dict, Iterable

from sqlalchemy.orm import Session

from schoolsync.models.external_record import ExternalRecord

log = logging.getLogger(__name__)

ID_FIELDS = ("id", "uid", "sourcedId", "sourcedID", "identifier")


def record_key(record: Dict[str, Any]) -> str:
    """External id of a record; a content hash when the API gives none."""
    for field in ID_FIELDS:
        value = record.get(field)
        if value not in (None, ""):
            return str(value)
    return hashlib.sha1(json.dumps(record, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class RecordStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def upsert(self, source: str, school_id: str, endpoint: str, records: Iterable[Dict[str, Any]]) -> int:
        """Inserts or refreshes each record; re-running a step converges to the same rows."""
        by_key: Dict[str, Dict[str, Any]] = {}
        for record in records:
            if isinstance(record, dict):
                by_key[record_key(record)] = record
        if not by_key:
            return 0

        with self.session_factory() as db:
            existing = {
                row.external_id: row
                for row in db.query(ExternalRecord).filter(
                    ExternalRecord.source == source,
                    ExternalRecord.school_id == str(school_id),
                    ExternalRecord.endpoint == endpoint,
                    ExternalRecord.external_id.in_(list(by_key)),
                )
            }
            for key, payload in by_key.items():
                row = existing.get(key)
                if row is None:
                    db.add(ExternalRecord(source=source, school_id=str(school_id), endpoint=endpoint,
                                          external_id=key, payload=payload))
                else:
                    row.payload = payload
            db.commit()
        log.debug(f"Upserted {len(by_key)} {source}/{endpoint} records for school {school_id} "
                  f"({len(by_key) - len(existing)} new)")
        return len(by_key)
