"""Entity resolution and exclusion handling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable

from storekb.core.logging import get_logger
from storekb.db.exclusions import ExclusionRepository
from storekb.db.jobs import JobStore
from storekb.models.entities import EntityRef
from storekb.utils.urls import is_http_url, normalize_url

if TYPE_CHECKING:
    from storekb.retrieval.vector_store import VectorStore

logger = get_logger(__name__)

PDF_PREFIX = "pdf://"

EntityLookup = Callable[[str], Iterable[EntityRef]]


class EntityResolver:
    """Map a chunk ``source_ref`` to the entities an exclusion rule can target.

    ``lookup`` lets the host add catalog entities for a source, for example a
    product permalink resolving to ``EntityRef("product", "17")``.
    """

    def __init__(self, lookup: EntityLookup | None = None) -> None:
        self.lookup = lookup

    def resolve(self, source_ref: str) -> list[EntityRef]:
        entities: list[EntityRef] = []
        if is_http_url(source_ref):
            entities.append(EntityRef("url", normalize_url(source_ref)))
        elif source_ref.startswith(PDF_PREFIX):
            entities.append(EntityRef("pdf", source_ref[len(PDF_PREFIX) :]))
        elif ":" in source_ref:
            entity_type, entity_id = source_ref.split(":", 1)
            if entity_type and entity_id:
                entities.append(EntityRef(entity_type, entity_id))
        if self.lookup is not None:
            for entity in self.lookup(source_ref):
                if entity not in entities:
                    entities.append(entity)
        return entities


@dataclass(slots=True)
class ExclusionResult:
    created: bool = False
    chunks_removed: int = 0
    jobs_removed: int = 0


class ExclusionService:
    """Keep excluded entities out of both ingestion and retrieval."""

    def __init__(
        self,
        repository: ExclusionRepository,
        vector_store: "VectorStore",
        jobs: JobStore,
        resolver: EntityResolver,
    ) -> None:
        self.repository = repository
        self.vector_store = vector_store
        self.jobs = jobs
        self.resolver = resolver

    def exclude(self, entity: EntityRef) -> ExclusionResult:
        created = self.repository.add(entity)
        result = ExclusionResult(created=created)
        result.chunks_removed = self.vector_store.delete_by_entity(entity)
        for job in self.jobs.list_jobs():
            if entity in self.resolver.resolve(job.source_ref):
                removed = self.jobs.delete(job.id)
                result.jobs_removed += removed.jobs
                result.chunks_removed += removed.chunks
        logger.info(
            "Excluded %s: %s chunks, %s jobs removed",
            entity,
            result.chunks_removed,
            result.jobs_removed,
        )
        return result

    def include(self, entity: EntityRef) -> bool:
        """Drop a rule. Content removed earlier is not restored; resubmit it."""
        return self.repository.remove(entity)

    def is_excluded(self, source_ref: str) -> bool:
        return self.repository.contains_any(self.resolver.resolve(source_ref))

    def cleanup(self) -> int:
        """Re-apply every active rule; returns the number of chunks removed."""
        removed = 0
        for rule in self.repository.list_rules():
            removed += self.vector_store.delete_by_entity(rule.entity)
        logger.info("Exclusion cleanup removed %s chunks", removed)
        return removed

    def sync(self, entity_type: str, entity_ids: Iterable[str]) -> ExclusionResult:
        """Make the rules for ``entity_type`` exactly ``entity_ids``."""
        wanted = {str(entity_id) for entity_id in entity_ids if str(entity_id)}
        current = {rule.entity_id for rule in self.repository.list_rules(entity_type)}
        for stale in sorted(current - wanted):
            self.include(EntityRef(entity_type, stale))
        total = ExclusionResult()
        for entity_id in sorted(wanted - current):
            result = self.exclude(EntityRef(entity_type, entity_id))
            total.created = total.created or result.created
            total.chunks_removed += result.chunks_removed
            total.jobs_removed += result.jobs_removed
        return total


def cleanup_message(removed: int) -> str:
    return f"Successfully removed {removed} embeddings for excluded content."


__all__ = ["EntityResolver", "ExclusionService", "ExclusionResult", "cleanup_message"]
