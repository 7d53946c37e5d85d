from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone


def _now():
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    # Wire format is camelCase, Python attributes stay snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConfirmedGuest(CamelModel):
    name: str
    items: List[str] = []


class Gathering(CamelModel):
    id: str
    date: str  # DD/MM/YYYY
    time: str  # HH:MM
    location: str
    provided_items: List[str] = []
    confirmed_guests: List[ConfirmedGuest] = []
    declined_guests: List[str] = []
    invited_users: List[str] = []
    created_by: str
    created_at: datetime = Field(default_factory=_now)

    def to_public(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class User(CamelModel):
    username: str
    display_name: str
    endpoints: List[str] = []
    created_at: datetime = Field(default_factory=_now)


# --- Request bodies ---

class CreateGatheringRequest(CamelModel):
    date: str
    time: str
    location: str
    provided_items: List[str]
    invited_users: List[str]
    host_id: str


class ConfirmPresenceRequest(CamelModel):
    name: str
    selected_items: List[str]


class DeclinePresenceRequest(CamelModel):
    name: str


class RegisterRequest(CamelModel):
    username: str
    display_name: str


class LoginRequest(CamelModel):
    username: str
    endpoint: str


class NotifyRequest(CamelModel):
    topic: Optional[str] = None
    user_ids: Optional[List[str]] = None
    title: str
    body: str
    payload: Dict[str, Any] = {}


class SubscribeRequest(CamelModel):
    endpoint: str
