"""Generic create/update/delete merge of a source list into a persisted entity family."""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, Type, TypeVar, Union

from chaindata.database import EntityStore

logger = logging.getLogger(__name__)

E = TypeVar("E")
S = TypeVar("S")

Upsert = Callable[[Optional[E], S], Union[Optional[E], Awaitable[Optional[E]]]]


@dataclass
class ReconcileResult(Generic[E]):
    """What a reconcile pass kept, deleted and left alone."""
    kept: List[E] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: int = 0
    dropped: int = 0


async def reconcile(
    store: EntityStore,
    model: Type,
    existing: Sequence[E],
    incoming: Sequence[S],
    identify: Callable[[S], Optional[str]],
    upsert: Upsert,
    retain: Optional[Callable[[S], Optional[str]]] = None,
) -> ReconcileResult:
    """
    Merge `incoming` source records into the `existing` entities of one family.

    Every existing id starts out as a deletion candidate. Each source record
    is identified, its entity fetched (or None when new), passed through
    `upsert` and saved before the next record is looked at. Ids still
    marked for deletion afterwards are deleted.

    A record whose id is unresolvable (`identify` returns None) is skipped;
    if `retain` names the id of the entity it previously produced, that
    entity is left exactly as persisted. A record for which `upsert`
    returns None (an unresolved relation) is dropped and its id stays a
    deletion candidate.
    """
    by_id = {entity.id: entity for entity in existing}
    deleted = dict.fromkeys(by_id)
    result = ReconcileResult()

    for source in incoming:
        entity_id = identify(source)
        if entity_id is None:
            retained = retain(source) if retain is not None else None
            if retained is not None:
                deleted.pop(retained, None)
            result.skipped += 1
            continue

        entity = upsert(by_id.get(entity_id), source)
        if inspect.isawaitable(entity):
            entity = await entity
        if entity is None:
            result.dropped += 1
            continue

        deleted.pop(entity.id, None)
        await store.save(entity)
        by_id[entity.id] = entity
        result.kept.append(entity)

    result.deleted = list(deleted)
    await store.delete(model, result.deleted)
    if result.deleted:
        logger.info(f"Deleted {len(result.deleted)} {model.__name__} entities: {', '.join(result.deleted)}")
    return result
