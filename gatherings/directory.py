"""User registry, device endpoints and caller identity checks."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from gatherings.errors import Conflict, Forbidden, InternalError, NotFound, Unauthorized, ValidationError
from gatherings.models import User

logger = logging.getLogger(__name__)


def _require(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' is required")
    return value


class Directory(ABC):
    """Owns User records. Registration is one-shot: a taken username is a Conflict."""

    @abstractmethod
    async def register(self, username: str, display_name: str) -> User:
        ...

    @abstractmethod
    async def record_login(self, username: str, endpoint: str) -> User:
        ...

    @abstractmethod
    async def get_user(self, username: str) -> Optional[User]:
        ...

    async def endpoints_for(self, username: str) -> List[str]:
        user = await self.get_user(username)
        return list(user.endpoints) if user else []


class InMemoryDirectory(Directory):

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def register(self, username: str, display_name: str) -> User:
        _require(username, "username")
        _require(display_name, "displayName")
        async with self._lock:
            if username in self._users:
                raise Conflict(f"User '{username}' already exists")
            user = User(username=username, display_name=display_name)
            self._users[username] = user
        logger.info(f"Registered: {username}")
        return user.model_copy(deep=True)

    async def record_login(self, username: str, endpoint: str) -> User:
        _require(username, "username")
        _require(endpoint, "endpoint")
        async with self._lock:
            user = self._users.get(username)
            if user is None:
                raise NotFound(f"User '{username}' not found")
            if endpoint not in user.endpoints:
                user.endpoints.append(endpoint)
        return user.model_copy(deep=True)

    async def get_user(self, username: str) -> Optional[User]:
        user = self._users.get(username)
        return user.model_copy(deep=True) if user else None


class MongoDirectory(Directory):

    def __init__(self, collection):
        self.collection = collection

    @staticmethod
    def _from_document(doc: dict) -> User:
        doc = dict(doc)
        doc["username"] = doc.pop("_id")
        return User.model_validate(doc)

    async def register(self, username: str, display_name: str) -> User:
        _require(username, "username")
        _require(display_name, "displayName")
        user = User(username=username, display_name=display_name)
        doc = user.model_dump(by_alias=True, exclude={"username"})
        doc["_id"] = username
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError as e:
            raise Conflict(f"User '{username}' already exists") from e
        except PyMongoError as e:
            raise InternalError(f"Could not register {username}: {e}", cause=e) from e
        logger.info(f"Registered: {username}")
        return user

    async def record_login(self, username: str, endpoint: str) -> User:
        _require(username, "username")
        _require(endpoint, "endpoint")
        try:
            res = await self.collection.update_one(
                {"_id": username},
                {"$addToSet": {"endpoints": endpoint}},
            )
            if res.matched_count == 0:
                raise NotFound(f"User '{username}' not found")
            doc = await self.collection.find_one({"_id": username})
        except PyMongoError as e:
            raise InternalError(f"Could not record login for {username}: {e}", cause=e) from e
        return self._from_document(doc)

    async def get_user(self, username: str) -> Optional[User]:
        try:
            doc = await self.collection.find_one({"_id": username})
        except PyMongoError as e:
            raise InternalError(f"Could not load user {username}: {e}", cause=e) from e
        return self._from_document(doc) if doc else None


class AccessGuard:

    def __init__(self, directory: Directory):
        self.directory = directory

    async def authenticate(self, identity: Optional[str]) -> str:
        if not identity:
            raise Unauthorized("Missing caller identity")
        if await self.directory.get_user(identity) is None:
            raise Unauthorized("Unknown caller identity")
        return identity

    @staticmethod
    def authorize_self(requested_user_id: str, authenticated_user_id: str) -> None:
        if requested_user_id != authenticated_user_id:
            raise Forbidden("Cannot read another user's invites")
