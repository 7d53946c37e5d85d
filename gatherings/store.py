"""Gathering persistence.

GatheringStore is the only contract the lifecycle depends on. Writes go through
update(), which applies a mutation atomically per gathering id: the in-memory
store serializes them behind a per-id lock, the Mongo store uses a version
field and retries a conditional replace.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError
from pymongo.errors import PyMongoError

from gatherings.errors import InternalError
from gatherings.models import Gathering

logger = logging.getLogger(__name__)

Mutation = Callable[[Gathering], None]


class GatheringStore(ABC):

    @abstractmethod
    async def create(self, gathering: Gathering) -> None:
        ...

    @abstractmethod
    async def find_by_id(self, gathering_id: str) -> Optional[Gathering]:
        ...

    @abstractmethod
    async def find_all(self) -> List[Gathering]:
        ...

    @abstractmethod
    async def update(self, gathering_id: str, mutate: Mutation) -> Optional[Gathering]:
        """Apply `mutate` to the stored gathering and persist it.

        Returns the updated gathering, or None if the id is unknown.
        """

    @abstractmethod
    async def delete(self, gathering_id: str) -> Optional[Gathering]:
        """Remove the gathering and return what was removed, or None."""


class InMemoryGatheringStore(GatheringStore):
    name = "memory"

    def __init__(self):
        self._gatherings: Dict[str, Gathering] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, gathering: Gathering) -> None:
        self._gatherings[gathering.id] = gathering.model_copy(deep=True)

    async def find_by_id(self, gathering_id: str) -> Optional[Gathering]:
        gathering = self._gatherings.get(gathering_id)
        return gathering.model_copy(deep=True) if gathering else None

    async def find_all(self) -> List[Gathering]:
        return [g.model_copy(deep=True) for g in list(self._gatherings.values())]

    async def update(self, gathering_id: str, mutate: Mutation) -> Optional[Gathering]:
        # Unknown ids never get a lock entry
        if gathering_id not in self._gatherings:
            return None
        async with self._locks[gathering_id]:
            current = self._gatherings.get(gathering_id)
            if current is None:
                self._locks.pop(gathering_id, None)
                return None
            updated = current.model_copy(deep=True)
            mutate(updated)
            self._gatherings[gathering_id] = updated
            return updated.model_copy(deep=True)

    async def delete(self, gathering_id: str) -> Optional[Gathering]:
        if gathering_id not in self._gatherings:
            return None
        async with self._locks[gathering_id]:
            removed = self._gatherings.pop(gathering_id, None)
        self._locks.pop(gathering_id, None)
        return removed


class MongoGatheringStore(GatheringStore):
    name = "mongo"
    max_update_attempts = 10

    def __init__(self, collection):
        self.collection = collection

    @staticmethod
    def _to_document(gathering: Gathering, version: int) -> dict:
        doc = gathering.model_dump(by_alias=True, exclude={"id"})
        doc["_id"] = gathering.id
        doc["version"] = version
        return doc

    @staticmethod
    def _from_document(doc: dict) -> Gathering:
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        doc.pop("version", None)
        return Gathering.model_validate(doc)

    async def create(self, gathering: Gathering) -> None:
        try:
            await self.collection.insert_one(self._to_document(gathering, 0))
        except PyMongoError as e:
            raise InternalError(f"Could not create gathering: {e}", cause=e) from e

    async def find_by_id(self, gathering_id: str) -> Optional[Gathering]:
        try:
            doc = await self.collection.find_one({"_id": gathering_id})
        except PyMongoError as e:
            raise InternalError(f"Could not load gathering {gathering_id}: {e}", cause=e) from e
        return self._from_document(doc) if doc else None

    async def find_all(self) -> List[Gathering]:
        try:
            docs = [doc async for doc in self.collection.find()]
        except PyMongoError as e:
            raise InternalError(f"Could not list gatherings: {e}", cause=e) from e
        gatherings = []
        for doc in docs:
            try:
                gatherings.append(self._from_document(doc))
            except ModelValidationError as e:
                logger.warning(f"Skipping unreadable gathering document {doc.get('_id')}: {e}")
        return gatherings

    async def update(self, gathering_id: str, mutate: Mutation) -> Optional[Gathering]:
        try:
            for attempt in range(self.max_update_attempts):
                doc = await self.collection.find_one({"_id": gathering_id})
                if doc is None:
                    return None
                version = doc.get("version", 0)
                gathering = self._from_document(doc)
                mutate(gathering)
                # Only replace if nobody wrote in between, otherwise reload and retry
                res = await self.collection.replace_one(
                    {"_id": gathering_id, "version": version},
                    self._to_document(gathering, version + 1),
                )
                if res.matched_count == 1:
                    return gathering
                logger.info(f"Write conflict on gathering {gathering_id}, attempt {attempt + 1}")
        except PyMongoError as e:
            raise InternalError(f"Could not update gathering {gathering_id}: {e}", cause=e) from e
        raise InternalError(f"Gave up updating gathering {gathering_id} after {self.max_update_attempts} conflicts")

    async def delete(self, gathering_id: str) -> Optional[Gathering]:
        try:
            doc = await self.collection.find_one_and_delete({"_id": gathering_id})
        except PyMongoError as e:
            raise InternalError(f"Could not delete gathering {gathering_id}: {e}", cause=e) from e
        return self._from_document(doc) if doc else None
