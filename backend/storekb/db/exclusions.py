"""Persistence for exclusion rules."""

from __future__ import annotations

from typing import Iterable

from storekb.db.sqlite import SQLiteDatabase
from storekb.models.entities import EntityRef, ExclusionRule
from storekb.utils.time import ms_to_datetime, now_ms


class ExclusionRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def add(self, entity: EntityRef) -> bool:
        """Record a rule; returns False when it already existed."""
        cursor = self.db.execute(
            "INSERT OR IGNORE INTO exclusion_rules (entity_type, entity_id, created_at) VALUES (?, ?, ?)",
            [entity.entity_type, entity.entity_id, now_ms()],
        )
        self.db.commit()
        return cursor.rowcount == 1

    def remove(self, entity: EntityRef) -> bool:
        cursor = self.db.execute(
            "DELETE FROM exclusion_rules WHERE entity_type = ? AND entity_id = ?",
            [entity.entity_type, entity.entity_id],
        )
        self.db.commit()
        return cursor.rowcount > 0

    def contains(self, entity: EntityRef) -> bool:
        row = self.db.query_one(
            "SELECT 1 FROM exclusion_rules WHERE entity_type = ? AND entity_id = ?",
            [entity.entity_type, entity.entity_id],
        )
        return row is not None

    def contains_any(self, entities: Iterable[EntityRef]) -> bool:
        return any(self.contains(entity) for entity in entities)

    def list_rules(self, entity_type: str | None = None) -> list[ExclusionRule]:
        if entity_type is None:
            rows = self.db.query("SELECT * FROM exclusion_rules ORDER BY created_at, entity_type, entity_id")
        else:
            rows = self.db.query(
                "SELECT * FROM exclusion_rules WHERE entity_type = ? ORDER BY created_at, entity_id",
                [entity_type],
            )
        return [
            ExclusionRule(
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                created_at=ms_to_datetime(row["created_at"]),
            )
            for row in rows
        ]


__all__ = ["ExclusionRepository"]
