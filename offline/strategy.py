"""
The composite caching strategies built on `RuntimeCacheStore`.

Every strategy returns a response; none of them raise on network failure.
When neither the cache nor the network can answer, the offline placeholder is
returned instead.
"""

from concurrent.futures import Executor, Future
from io import BytesIO
import logging
import threading
from typing import Callable, Optional, Set

from .cache import RuntimeCacheStore
from .model import Request, Response, Strategy
from .network import Network, NetworkError


logger = logging.getLogger(__name__)


def offline_placeholder() -> Response:
    return Response(status=503, reason='Offline', headers={'Content-Type': 'text/plain'}, body=BytesIO(b'Offline'))


def _buffered(response: Response, content: bytes) -> Response:
    return Response(status=response.status, reason=response.reason, headers=response.headers, body=BytesIO(content))


class StrategyRunner:
    def __init__(self,
                 runtime: RuntimeCacheStore,
                 network: Network,
                 fallback_page: Callable[[], Optional[Response]],
                 background: Executor,
                 timeout: Optional[float] = None) -> None:
        """
        @param fallback_page
          Looks up the cached offline page served to navigation requests.
        @param background
          Runs stale-while-revalidate refreshes.
        @param timeout
          Default bound, in seconds, on network fetches made by a strategy.
        """
        self.__runtime = runtime
        self.__network = network
        self.__fallback_page = fallback_page
        self.__background = background
        self.__timeout = timeout
        self.__pending: Set[Future] = set()
        self.__lock = threading.Lock()

    def execute(self,
                strategy: Strategy,
                request: Request,
                navigation: bool = False,
                timeout: Optional[float] = None) -> Response:
        timeout = timeout if timeout is not None else self.__timeout
        if strategy is Strategy.CACHE_FIRST:
            return self.cache_first(request, navigation, timeout)
        if strategy is Strategy.STALE_WHILE_REVALIDATE:
            return self.stale_while_revalidate(request, navigation, timeout)
        return self.network_first(request, navigation, timeout)

    def cache_first(self, request: Request, navigation: bool = False, timeout: Optional[float] = None) -> Response:
        # Look up without evicting: a stale copy is still better than the placeholder when offline.
        cached = self.__runtime.read(request, evict_stale=False)
        if cached is not None and self.__runtime.is_fresh(request.uri, self.__runtime.max_age_seconds):
            logger.info('Cache-first: serving fresh cached copy of {}.'.format(request.uri))
            return cached.response

        try:
            return self._fetch_and_store(request, timeout)
        except NetworkError:
            if cached is not None:
                logger.info('Cache-first: network failed, serving stale cached copy of {}.'.format(request.uri))
                return cached.response
            return self.offline_response(navigation)

    def network_first(self, request: Request, navigation: bool = False, timeout: Optional[float] = None) -> Response:
        try:
            return self._fetch_and_store(request, timeout)
        except NetworkError:
            cached = self.__runtime.read(request)
            if cached is not None:
                logger.info('Network-first: network failed, serving cached copy of {}.'.format(request.uri))
                return cached.response
            return self.offline_response(navigation)

    def stale_while_revalidate(self,
                               request: Request,
                               navigation: bool = False,
                               timeout: Optional[float] = None) -> Response:
        cached = self.__runtime.read(request, evict_stale=False)
        if cached is not None:
            logger.info('Stale-while-revalidate: serving cached copy of {} and refreshing it.'.format(request.uri))
            self._revalidate(request, timeout)
            return cached.response

        try:
            return self._fetch_and_store(request, timeout)
        except NetworkError:
            return self.offline_response(navigation)

    def offline_response(self, navigation: bool = False) -> Response:
        if navigation:
            page = self.__fallback_page()
            if page is not None:
                logger.info('Serving the offline page.')
                return page
        logger.info('Serving the offline placeholder.')
        return offline_placeholder()

    def wait(self) -> None:
        """
        Block until all background refreshes started so far have finished.
        """
        with self.__lock:
            pending = list(self.__pending)
        for future in pending:
            future.result()

    def _fetch_and_store(self, request: Request, timeout: Optional[float]) -> Response:
        response = self.__network.fetch(request, timeout=timeout)
        content = response.body.read()
        if request.method.upper() == 'GET':
            self.__runtime.write(request, _buffered(response, content))
        return _buffered(response, content)

    def _revalidate(self, request: Request, timeout: Optional[float]) -> None:
        def refresh():
            try:
                self._fetch_and_store(request, timeout)
            except NetworkError:
                logger.info('Background refresh of {} failed. Keeping the cached copy.'.format(request.uri))
            except Exception:
                logger.exception('Unexpected error while refreshing {}'.format(request.uri))

        future = self.__background.submit(refresh)
        with self.__lock:
            self.__pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self.__lock:
            self.__pending.discard(future)
