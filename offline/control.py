"""
The in-process message protocol between callers and the engine.

A message is a mapping with a `type` and an optional `payload`:

    {'type': 'SKIP_WAITING'}
    {'type': 'PRELOAD', 'payload': {'urls': ['/a', '/b']}}
    {'type': 'FLUSH_QUEUE', 'payload': {'tag': 'orders'}}
    {'type': 'QUEUE_REQUEST', 'payload': {'url': '/api/orders', 'method': 'POST', 'body': {...}}}

Posting a message never raises. The caller only learns whether it succeeded.
"""

import logging
from typing import Any, Mapping, TYPE_CHECKING

if TYPE_CHECKING:
    from .engine import OfflineEngine


logger = logging.getLogger(__name__)


SKIP_WAITING = 'SKIP_WAITING'
PRELOAD = 'PRELOAD'
FLUSH_QUEUE = 'FLUSH_QUEUE'
QUEUE_REQUEST = 'QUEUE_REQUEST'


class ControlChannel:
    def __init__(self, engine: 'OfflineEngine') -> None:
        self.__engine = engine
        self.__handlers = {
            SKIP_WAITING: self._skip_waiting,
            PRELOAD: self._preload,
            FLUSH_QUEUE: self._flush_queue,
            QUEUE_REQUEST: self._queue_request,
        }

    def post(self, message: Any) -> bool:
        if not isinstance(message, Mapping):
            logger.warning('Ignoring control message that is not a mapping.')
            return False

        message_type = message.get('type')
        handler = self.__handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            logger.warning('Ignoring unknown control message {!r}.'.format(message_type))
            return False

        payload = message.get('payload')
        payload = payload if isinstance(payload, Mapping) else {}
        try:
            return bool(handler(payload))
        except Exception:
            logger.exception('Control message {} failed'.format(message_type))
            return False

    def _skip_waiting(self, payload: Mapping[str, Any]) -> bool:
        self.__engine.skip_waiting()
        return True

    def _preload(self, payload: Mapping[str, Any]) -> bool:
        urls = payload.get('urls')
        if not isinstance(urls, (list, tuple)):
            urls = []
        self.__engine.preload([url for url in urls if isinstance(url, str) and url.strip()])
        return True

    def _flush_queue(self, payload: Mapping[str, Any]) -> bool:
        tag = payload.get('tag')
        self.__engine.flush(str(tag) if tag else self.__engine.default_tag)
        return True

    def _queue_request(self, payload: Mapping[str, Any]) -> bool:
        return self.__engine.queue_request(payload)
