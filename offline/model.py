"""
Defines types shared by the components of the offline engine.

These types are as simple as possible in order to most conveniently consume and
produce instances of them. None of them know how they are persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from typing import IO, Any, Dict, List, Mapping, Optional


class Strategy(Enum):
    NETWORK_FIRST = 'network-first'
    CACHE_FIRST = 'cache-first'
    STALE_WHILE_REVALIDATE = 'stale-while-revalidate'


class Category(Enum):
    NAVIGATION = 'navigation'
    API = 'api'
    ASSET = 'asset'


class AppliesTo(Enum):
    ALL = 'all'
    NAVIGATION = 'navigation'
    API = 'api'
    ASSET = 'asset'

    def covers(self, category: Category) -> bool:
        return self is AppliesTo.ALL or self.value == category.value


@dataclass
class Request:
    """
    Represents an arbitrary outgoing request.
    """

    method: str
    """
    The HTTP method of the request. E.g., "GET".
    """

    uri: str
    """
    The absolute URL of the resource being requested.
    """

    headers: Mapping[str, str]
    """
    All the headers being sent with the request.
    """

    body: Optional[bytes] = None
    """
    The request payload, if any. Only mutating requests are expected to carry one.
    """

    credentials: str = 'same-origin'
    """
    Which credentials may accompany the request: "omit", "same-origin" or "include".
    """

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


@dataclass
class Response:
    """
    Represents an arbitrary response, without any bells and whistles.

    We deliberately do not use urllib3's `Response` we just want a type that
    does what we need, and nothing more. The adapter converts between this and
    `requests.Response`.
    """

    status: int
    """
    The status code of the response. E.g., 200 or 400.
    """

    reason: str
    """
    The reason string, which relates to the status code.
    """

    headers: Mapping[str, str]
    """
    All the headers sent with the response.
    """

    body: IO[bytes] = field(compare=False, default_factory=BytesIO)
    """
    A file-like object containing the response payload.
    """

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class CacheEntry:
    """
    A cache entry.

    The metadata (when it was cached) lives in the durable store, keyed by the
    same URL as the entry itself.
    """
    request: Request
    response: Response


@dataclass
class CacheRule:
    """
    A configured override of the default strategy for part of the URL space.

    Exactly one of `prefix` and `pattern` is used. A prefix is matched against
    the request path; a pattern is searched for in the request path.
    """
    strategy: Strategy
    applies_to: AppliesTo = AppliesTo.ALL
    prefix: str = ''
    pattern: Optional[Any] = field(default=None, compare=False)

    def matches(self, path: str, category: Category) -> bool:
        if not self.applies_to.covers(category):
            return False
        if self.prefix:
            return path.startswith(self.prefix)
        if self.pattern is not None:
            return self.pattern.search(path) is not None
        return False


@dataclass
class QueueItem:
    """
    One pending mutating request, waiting to be replayed.

    Timestamps are seconds since the epoch, as returned by the engine's clock.
    """
    url: str
    method: str
    headers: Dict[str, str]
    body: Optional[bytes]
    tag: str
    fingerprint: str = ''
    credentials: str = 'same-origin'
    created_at: float = 0.0
    updated_at: Optional[float] = None
    attempts: int = 0
    next_attempt_at: Optional[float] = None
    expires_at: Optional[float] = None
    id: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def is_due(self, now: float) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now

    @property
    def due_at(self) -> float:
        return self.next_attempt_at or self.created_at or 0.0


@dataclass
class NotificationAction:
    action: str
    title: str
    icon: Optional[str] = None


@dataclass
class NotificationSpec:
    """
    Everything needed to display one inbound push message. Never persisted.
    """
    title: str
    body: str = ''
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    tag: Optional[str] = None
    require_interaction: Optional[bool] = None
    renotify: Optional[bool] = None
    silent: Optional[bool] = None
    vibrate: Optional[List[int]] = None
    actions: List[NotificationAction] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
