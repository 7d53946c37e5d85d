"""Gathering lifecycle: creation, classification, RSVP aggregation, cancellation.

Every write goes through the store first. Notifications are sent only after
the write has committed, and a failed notification is reported alongside the
result instead of undoing the write.

RSVP lists are append-only and never deduplicated: confirming twice adds two
entries, and a guest may be both confirmed and declined.
"""
import logging
import re
import uuid
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional, Sequence

from gatherings import config
from gatherings.errors import DispatchError, InternalError, NotFound, ValidationError
from gatherings.models import ConfirmedGuest, Gathering
from gatherings.notifications import NotificationDispatcher
from gatherings.store import GatheringStore

logger = logging.getLogger(__name__)

DATE_FORMAT = "%d/%m/%Y"
TIME_FORMAT = "%H:%M"
_DATE_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")

STATUSES = ("active", "past")
NOTIFICATION_MODES = ("users", "topic")


class Outcome(NamedTuple):
    gathering: Gathering
    notification_error: Optional[str] = None


def topic_for(gathering_id: str) -> str:
    return f"gathering_{gathering_id}"


def parse_instant(date: str, time: str) -> datetime:
    """Local, naive instant of a gathering. Raises ValueError on malformed input."""
    if not isinstance(date, str) or not _DATE_RE.match(date):
        raise ValueError(f"date {date!r} is not DD/MM/YYYY")
    if not isinstance(time, str) or not _TIME_RE.match(time):
        raise ValueError(f"time {time!r} is not HH:MM")
    return datetime.strptime(f"{date} {time}", f"{DATE_FORMAT} {TIME_FORMAT}")


def _require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' is required")
    return value


def _require_text_list(value, field: str) -> List[str]:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"'{field}' must be a list of strings")
    return list(value)


class GatheringLifecycle:

    def __init__(self, store: GatheringStore, dispatcher: NotificationDispatcher,
                 notification_mode: str = None, clock: Callable[[], datetime] = datetime.now):
        mode = notification_mode or config.NOTIFICATION_MODE
        if mode not in NOTIFICATION_MODES:
            raise ValueError(f"Unknown notification mode {mode!r}")
        self.store = store
        self.dispatcher = dispatcher
        self.notification_mode = mode
        self.clock = clock

    # --- Reads ---

    async def get_details(self, gathering_id: str) -> Gathering:
        gathering = await self.store.find_by_id(gathering_id)
        if gathering is None:
            raise NotFound(f"Gathering {gathering_id} not found")
        return gathering

    async def classify(self, status: str) -> List[Gathering]:
        if status not in STATUSES:
            raise ValidationError(f"'status' must be one of {', '.join(STATUSES)}")
        now = self.clock()
        selected = []
        for gathering in await self.store.find_all():
            try:
                instant = parse_instant(gathering.date, gathering.time)
            except ValueError as e:
                logger.warning(f"Skipping gathering {gathering.id} with unreadable schedule: {e}")
                continue
            if (instant >= now) == (status == "active"):
                selected.append(gathering)
        return selected

    async def list_pending_invites(self, user_id: str) -> List[Gathering]:
        return [
            g for g in await self.store.find_all()
            if user_id in g.invited_users
            and not any(guest.name == user_id for guest in g.confirmed_guests)
            and user_id not in g.declined_guests
        ]

    # --- Writes ---

    async def create(self, date: str, time: str, location: str, provided_items: Sequence[str],
                     invited_users: Sequence[str], created_by: str) -> Outcome:
        _require_text(date, "date")
        _require_text(time, "time")
        _require_text(location, "location")
        _require_text(created_by, "hostId")
        provided_items = _require_text_list(provided_items, "providedItems")
        invited_users = _require_text_list(invited_users, "invitedUsers")
        try:
            parse_instant(date, time)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        gathering = Gathering(
            id=uuid.uuid4().hex,
            date=date,
            time=time,
            location=location,
            provided_items=provided_items,
            confirmed_guests=[],
            declined_guests=[],
            invited_users=invited_users,
            created_by=created_by,
        )
        await self.store.create(gathering)
        logger.info(f"Gathering {gathering.id} created by {created_by} for {date} {time}")

        error = await self._best_effort(self._announce_creation(gathering))
        return Outcome(gathering, error)

    async def confirm_presence(self, gathering_id: str, name: str, selected_items: Sequence[str]) -> Outcome:
        _require_text(name, "name")
        selected_items = _require_text_list(selected_items, "selectedItems")

        def mutate(gathering: Gathering):
            gathering.confirmed_guests.append(ConfirmedGuest(name=name, items=list(selected_items)))
            gathering.provided_items.extend(selected_items)

        updated = await self.store.update(gathering_id, mutate)
        if updated is None:
            raise NotFound(f"Gathering {gathering_id} not found")
        logger.info(f"{name} confirmed gathering {gathering_id} bringing {len(selected_items)} item(s)")

        error = await self._best_effort(self._announce_rsvp(
            updated, name,
            title="Presence confirmed",
            body=f"{name} is coming on {updated.date} at {updated.time}",
            items=selected_items,
        ))
        return Outcome(updated, error)

    async def decline_presence(self, gathering_id: str, name: str) -> Outcome:
        _require_text(name, "name")

        updated = await self.store.update(gathering_id, lambda g: g.declined_guests.append(name))
        if updated is None:
            raise NotFound(f"Gathering {gathering_id} not found")
        logger.info(f"{name} declined gathering {gathering_id}")

        error = await self._best_effort(self._announce_rsvp(
            updated, name,
            title="Presence declined",
            body=f"{name} can't make it on {updated.date} at {updated.time}",
        ))
        return Outcome(updated, error)

    async def cancel(self, gathering_id: str) -> Outcome:
        removed = await self.store.delete(gathering_id)
        if removed is None:
            raise NotFound(f"Gathering {gathering_id} not found")
        logger.info(f"Gathering {gathering_id} cancelled")

        error = await self._best_effort(self._announce_cancellation(removed))
        return Outcome(removed, error)

    # --- Notifications ---

    async def _best_effort(self, announcement) -> Optional[str]:
        try:
            await announcement
        except (DispatchError, InternalError) as e:
            logger.error(f"Notification error: {e.message}")
            return e.message
        return None

    async def _announce_creation(self, gathering: Gathering):
        title = "You're invited to a gathering!"
        body = f"New gathering on {gathering.date} at {gathering.time} at {gathering.location}"
        payload = {
            "gatheringId": gathering.id,
            "date": gathering.date,
            "time": gathering.time,
            "location": gathering.location,
            "createdBy": gathering.created_by,
            "providedItems": gathering.provided_items,
        }
        if self.notification_mode == "topic":
            topic = topic_for(gathering.id)
            await self.dispatcher.subscribe_users(topic, gathering.invited_users)
            await self.dispatcher.notify_topic(topic, title, body, payload)
        else:
            await self.dispatcher.notify_users(gathering.invited_users, title, body, payload)

    async def _announce_rsvp(self, gathering: Gathering, name: str, title: str, body: str,
                             items: Sequence[str] = None):
        if self.notification_mode == "topic":
            await self.dispatcher.unsubscribe_user(topic_for(gathering.id), name)
        payload = {"gatheringId": gathering.id, "name": name}
        if items is not None:
            payload["items"] = items
        await self.dispatcher.notify_users([gathering.created_by], title, body, payload)

    async def _announce_cancellation(self, gathering: Gathering):
        title = "Gathering cancelled"
        body = f"The gathering on {gathering.date} at {gathering.time} at {gathering.location} was cancelled"
        payload = {"gatheringId": gathering.id, "location": gathering.location}
        if self.notification_mode == "topic":
            topic = topic_for(gathering.id)
            try:
                await self.dispatcher.notify_topic(topic, title, body, payload)
            finally:
                self.dispatcher.topics.drop(topic)
        else:
            await self.dispatcher.notify_users(gathering.invited_users, title, body, payload)
