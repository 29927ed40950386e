"""
The offline resilience engine.

An `OfflineEngine` is constructed explicitly from an `EngineConfig` and owns its
durable store, caches and queue. The host delivers discrete triggers to it (an
outgoing request, a control message, a retry signal, a push event, a
notification click) and each handler runs to completion. No state lives in
memory between triggers except what can be rebuilt from disk.
"""

from concurrent.futures import Executor, ThreadPoolExecutor
from io import BytesIO
import json
import logging
import time
from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import urljoin, urlsplit

from .cache import Cache, EntryExists, FileCache, HttpAwareCache, RuntimeCacheStore
from .config import EngineConfig
from .control import ControlChannel
from .model import Category, NotificationSpec, QueueItem, Request, Response
from .network import Network, NetworkError
from .notification import NotificationRouter, RawPayload
from .platform import Client, DetachedPlatform, Platform
from .queue import MutationQueue
from .rules import CacheRuleEngine
from .storage import Storage
from .strategy import StrategyRunner
from .sync import SyncProcessor
from .util import encode_body, origin_of, same_origin


logger = logging.getLogger(__name__)


DEFAULT_SYNC_TAG = 'offline-sync-default'
BACKGROUND_SYNC_HEADER = 'X-Offline-Background-Sync'
SYNC_QUEUED = 'SYNC_QUEUED'

_SAFE_METHODS = ('GET', 'HEAD')


def accepted_response() -> Response:
    return Response(status=202,
                    reason='Accepted',
                    headers={'Content-Type': 'application/json'},
                    body=BytesIO(json.dumps({'queued': True, 'offline': True}).encode('utf-8')))


class OfflineEngine:
    default_tag = DEFAULT_SYNC_TAG

    def __init__(self,
                 config: EngineConfig,
                 platform: Optional[Platform] = None,
                 network: Optional[Network] = None,
                 clock: Callable[[], float] = time.time,
                 background: Optional[Executor] = None) -> None:
        self.__config = config
        self.__platform = platform if platform is not None else DetachedPlatform()
        self.__network = network if network is not None else Network()
        self.__origin = origin_of(config.scope)
        self.__owns_background = background is None
        self.__background = background if background is not None else ThreadPoolExecutor(
            max_workers=4, thread_name_prefix='offline-revalidate')
        self.__active = False

        directory = config.data_directory
        self.__storage = Storage(directory / 'offline.sqlite3')
        self.__static: Cache = HttpAwareCache(FileCache(directory / 'static', 2))
        self.__runtime = RuntimeCacheStore(HttpAwareCache(FileCache(directory / 'runtime', 2)),
                                           self.__storage,
                                           config.cache.max_runtime_entries,
                                           config.cache.max_runtime_age_seconds,
                                           clock)
        self.__rules = CacheRuleEngine(config.cache)
        self.__strategies = StrategyRunner(self.__runtime,
                                           self.__network,
                                           self._fallback_page,
                                           self.__background,
                                           timeout=config.cache.network_timeout_seconds)
        self.__queue = MutationQueue(self.__storage, config.sync, clock)
        self.__sync = SyncProcessor(self.__queue, self.__network, self.__platform, self.__origin, clock)
        self.__notifications = NotificationRouter(config.push, config.scope)
        self.__control = ControlChannel(self)

    # region Components

    @property
    def config(self) -> EngineConfig:
        return self.__config

    @property
    def origin(self) -> str:
        return self.__origin

    @property
    def active(self) -> bool:
        return self.__active

    @property
    def runtime(self) -> RuntimeCacheStore:
        return self.__runtime

    @property
    def queue(self) -> MutationQueue:
        return self.__queue

    @property
    def rules(self) -> CacheRuleEngine:
        return self.__rules

    @property
    def notifications(self) -> NotificationRouter:
        return self.__notifications

    @property
    def control(self) -> ControlChannel:
        return self.__control

    # endregion

    # region Lifecycle

    def install(self) -> int:
        """
        Warm the static cache with every precache resource.

        Resources that cannot be fetched are skipped.

        @return
          The number of resources cached.
        """
        cached = 0
        for path in self.__config.precache:
            request = Request(method='GET', uri=self.resolve(path), headers={})
            try:
                response = self.__network.fetch(request, timeout=self.__config.cache.network_timeout_seconds)
            except NetworkError:
                logger.info('Could not precache {}.'.format(request.uri))
                continue

            try:
                self.__static.delete(request)
                if self.__static.add(request, response) is not None:
                    cached += 1
            except (EntryExists, OSError):
                logger.warning('Could not store precached {}.'.format(request.uri))
        logger.info('Precached {} of {} resources.'.format(cached, len(self.__config.precache)))
        return cached

    def activate(self) -> None:
        self.__active = True
        logger.info('Engine is active for {}.'.format(self.__config.scope))

    def skip_waiting(self) -> None:
        self.__platform.skip_waiting()
        self.activate()

    def wait_for_background(self) -> None:
        self.__strategies.wait()

    def close(self) -> None:
        if self.__owns_background:
            self.__background.shutdown(wait=True)
        self.__network.close()

    # endregion

    # region Triggers

    def handle_fetch(self, request: Request, timeout: Optional[float] = None) -> Response:
        """
        Answer an intercepted request.

        Reads go through the caching strategy their rules select. Mutations in
        scope are queued when the network fails and acknowledged with a 202.
        Any other request goes straight to the network.

        @throws NetworkError
          Only for out-of-scope mutations, which the engine does not handle.
        """
        method = request.method.upper()
        if method in _SAFE_METHODS:
            category = self.__rules.classify(request)
            strategy = self.__rules.resolve_strategy(request, category)
            return self.__strategies.execute(strategy,
                                             request,
                                             navigation=category is Category.NAVIGATION,
                                             timeout=timeout)

        if self.should_queue(request):
            return self._network_with_queue(request, timeout)

        return self.__network.fetch(request, timeout=timeout)

    def on_sync(self, tag: Any) -> int:
        """
        Handle the platform's retry signal for `tag`.
        """
        if not isinstance(tag, str) or not tag:
            return 0
        return self.flush(tag)

    def on_message(self, message: Any) -> bool:
        return self.__control.post(message)

    def on_push(self, raw: RawPayload) -> NotificationSpec:
        return self.__notifications.build_display_spec(raw)

    def on_notification_click(self, notification) -> Optional[Client]:
        return self.__notifications.handle_click(notification, self.__platform)

    # endregion

    # region Operations

    def should_queue(self, request: Request) -> bool:
        if not self.__config.sync.enabled:
            return False
        if request.method.upper() in _SAFE_METHODS:
            return False

        flag = (request.header(BACKGROUND_SYNC_HEADER) or '').strip().lower()
        if flag in ('1', 'true'):
            return True

        return same_origin(request.uri, self.__origin) and urlsplit(request.uri).path.startswith('/api/')

    def flush(self, tag: str = DEFAULT_SYNC_TAG) -> int:
        try:
            return self.__sync.drain(tag)
        except Exception:
            logger.exception('Flushing tag {} failed'.format(tag))
            return 0

    def preload(self, urls: Iterable[str]) -> int:
        """
        Eagerly cache `urls`, then trim the runtime cache to its bound.

        @return
          The number of URLs cached.
        """
        cached = 0
        for url in urls:
            request = Request(method='GET', uri=self.resolve(url), headers={}, credentials='same-origin')
            try:
                response = self.__network.fetch(request, timeout=self.__config.cache.network_timeout_seconds)
            except NetworkError:
                logger.info('Could not preload {}.'.format(request.uri))
                continue
            if self.__runtime.write(request, response, trim=False) is not None:
                cached += 1

        self.__runtime.trim(self.__runtime.max_entries)
        return cached

    def queue_request(self, payload: Mapping[str, Any]) -> bool:
        """
        Queue a request described by a caller who already knows it is offline.
        """
        url = payload.get('url')
        if not url:
            return False
        url = urljoin(self.__origin + '/', str(url))
        if not same_origin(url, self.__origin):
            logger.warning('Refusing to queue a request for another origin: {}'.format(url))
            return False

        headers = payload.get('headers')
        headers = {str(key): str(value) for key, value in headers.items()} if isinstance(headers, Mapping) else {}
        body = encode_body(payload.get('body'), headers)

        item = QueueItem(url=url,
                         method=str(payload.get('method') or 'POST').upper(),
                         headers=headers,
                         body=body,
                         tag=str(payload.get('tag') or DEFAULT_SYNC_TAG),
                         credentials='same-origin')
        if not self.__queue.enqueue(item):
            return False

        self._announce_queued(item)
        return True

    def resolve(self, url: str) -> str:
        return urljoin(self.__config.scope, url)

    # endregion

    def _network_with_queue(self, request: Request, timeout: Optional[float]) -> Response:
        try:
            return self.__network.fetch(request, timeout=timeout)
        except NetworkError:
            logger.info('Network failed for {} {}. Queueing it for replay.'.format(request.method, request.uri))

        item = QueueItem(url=request.uri,
                         method=request.method.upper(),
                         headers=dict(request.headers),
                         body=request.body,
                         tag=DEFAULT_SYNC_TAG,
                         credentials=request.credentials or 'same-origin')
        if self.__queue.enqueue(item):
            self._announce_queued(item)
        return accepted_response()

    def _announce_queued(self, item: QueueItem) -> None:
        try:
            if not self.__platform.register_sync(item.tag):
                logger.info('No retry signal registered for tag {}. It drains on the next flush.'.format(item.tag))
            self.__platform.broadcast(SYNC_QUEUED, {'url': item.url, 'method': item.method, 'tag': item.tag})
        except Exception:
            logger.exception('Could not announce queued request {}'.format(item.id))

    def _fallback_page(self) -> Optional[Response]:
        request = Request(method='GET', uri=self.resolve(self.__config.offline_fallback), headers={})
        try:
            entry = self.__static.get(request)
        except OSError as e:
            logger.warning('Could not read the precached offline page: {}'.format(e))
            entry = None
        entry = entry or self.__runtime.read(request)
        return entry.response if entry is not None else None
