"""Push notification dispatch.

Payloads cross the transport boundary as flat text-to-text maps. The coercion
table lives here and nowhere else: callers hand over whatever mapping they
have and coerce_payload() turns it into what the push service accepts.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from gatherings import config
from gatherings.directory import Directory
from gatherings.errors import DispatchError, ValidationError

logger = logging.getLogger(__name__)

NO_ITEMS_FALLBACK = "No items provided"

# Fields with a meaningful placeholder when absent; everything else falls back to ""
PAYLOAD_FALLBACKS = {
    "providedItems": NO_ITEMS_FALLBACK,
    "items": NO_ITEMS_FALLBACK,
}


def coerce_value(key: str, value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        value = ",".join(str(v) for v in value)
    elif isinstance(value, bool):
        value = "true" if value else "false"
    elif value is not None:
        value = str(value)
    if not value:
        return PAYLOAD_FALLBACKS.get(key, "")
    return value


def coerce_payload(payload: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {str(key): coerce_value(str(key), value) for key, value in (payload or {}).items()}


def _skipped_receipt() -> dict:
    return {"endpoints": 0, "status": "skipped", "tickets": []}


class PushTransport(ABC):

    @abstractmethod
    async def send(self, endpoints: List[str], title: str, body: str, data: Dict[str, str]) -> dict:
        """Deliver one notification to every endpoint in a single batch.

        Returns a receipt dict; raises DispatchError on transport failure.
        """


class ExpoPushTransport(PushTransport):

    def __init__(self, push_url: str = None, timeout: float = None, http_transport: httpx.AsyncBaseTransport = None):
        self.push_url = push_url or config.EXPO_PUSH_URL
        self.timeout = timeout or config.DISPATCH_TIMEOUT_SECONDS
        self.http_transport = http_transport

    async def send(self, endpoints, title, body, data):
        messages = []
        for token in endpoints:
            if token and token.startswith("ExponentPushToken"):
                messages.append({
                    "to": token,
                    "title": title,
                    "body": body,
                    "data": data,
                    "sound": "default",
                    "priority": "high",
                    "categoryIdentifier": "GATHERING_INVITATION",
                    "channelId": "gatherings",
                })
            else:
                logger.debug(f"Skipping non-Expo endpoint {token!r}")

        if not messages:
            return _skipped_receipt()

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
            try:
                resp = await client.post(self.push_url, json=messages)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise DispatchError(f"Push delivery failed: {e}") from e

        logger.info(f"Push response: {resp.status_code} for {len(messages)} endpoint(s)")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        tickets = body.get("data", []) if isinstance(body, dict) else []
        return {"endpoints": len(messages), "status": resp.status_code, "tickets": tickets}


class TopicRegistry:
    """Which device endpoints listen on which broadcast topic."""

    def __init__(self):
        self._topics: Dict[str, List[str]] = {}

    def subscribe(self, topic: str, endpoint: str) -> None:
        subscribers = self._topics.setdefault(topic, [])
        if endpoint not in subscribers:
            subscribers.append(endpoint)

    def unsubscribe(self, topic: str, endpoint: str) -> None:
        subscribers = self._topics.get(topic)
        if subscribers and endpoint in subscribers:
            subscribers.remove(endpoint)

    def drop(self, topic: str) -> None:
        self._topics.pop(topic, None)

    def subscribers(self, topic: str) -> List[str]:
        return list(self._topics.get(topic, []))


class NotificationDispatcher:

    def __init__(self, directory: Directory, transport: PushTransport,
                 topics: TopicRegistry = None, timeout: float = None):
        self.directory = directory
        self.transport = transport
        self.topics = topics or TopicRegistry()
        self.timeout = timeout or config.DISPATCH_TIMEOUT_SECONDS

    async def notify_topic(self, topic: str, title: str, body: str, payload: Mapping[str, Any] = None) -> dict:
        if not topic:
            raise ValidationError("'topic' is required")
        return await self._send(self.topics.subscribers(topic), title, body, payload)

    async def notify_users(self, user_ids: Iterable[str], title: str, body: str,
                           payload: Mapping[str, Any] = None) -> dict:
        return await self._send(await self.resolve_endpoints(user_ids), title, body, payload)

    async def resolve_endpoints(self, user_ids: Iterable[str]) -> List[str]:
        endpoints = []
        for user_id in user_ids:
            endpoints.extend(await self.directory.endpoints_for(user_id))
        return endpoints

    async def subscribe_users(self, topic: str, user_ids: Iterable[str]) -> None:
        for endpoint in await self.resolve_endpoints(user_ids):
            self.topics.subscribe(topic, endpoint)

    async def unsubscribe_user(self, topic: str, user_id: str) -> None:
        for endpoint in await self.directory.endpoints_for(user_id):
            self.topics.unsubscribe(topic, endpoint)

    async def _send(self, endpoints: List[str], title: str, body: str, payload) -> dict:
        if not endpoints:
            logger.debug(f"No endpoints for '{title}', nothing sent")
            return _skipped_receipt()
        data = coerce_payload(payload)
        try:
            return await asyncio.wait_for(
                self.transport.send(endpoints, title, body, data), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise DispatchError(f"Push delivery timed out after {self.timeout}s") from e
        except DispatchError:
            raise
        except Exception as e:
            logger.error(f"Push transport failed unexpectedly: {e}", exc_info=e)
            raise DispatchError(f"Push delivery failed: {e}") from e
