from enum import Enum
import logging
import threading
from typing import Callable, Set

from .model import QueueItem, Request
from .network import Network, NetworkError, apply_credentials
from .platform import Platform
from .queue import MutationQueue, ensure_idempotency_header


logger = logging.getLogger(__name__)


REPLAY_HEADER = 'X-Offline-Replay'
SYNC_FLUSHED = 'SYNC_FLUSHED'


class ReplayOutcome(Enum):
    DELIVERED = 'delivered'
    REJECTED = 'rejected'
    FAILED = 'failed'


def classify_status(status: int) -> ReplayOutcome:
    if 200 <= status < 300:
        return ReplayOutcome.DELIVERED
    if 400 <= status < 500:
        # Replaying a request the origin considers malformed can never succeed.
        return ReplayOutcome.REJECTED
    return ReplayOutcome.FAILED


class SyncProcessor:
    """
    Replays queued mutations for one tag at a time.

    A drain cycle replays items sequentially, earliest-due first. Cycles for
    different tags may run concurrently; a second cycle for a tag that is
    already draining returns immediately, so the same item is never replayed
    twice at once by this process.
    """

    def __init__(self,
                 queue: MutationQueue,
                 network: Network,
                 platform: Platform,
                 origin: str,
                 clock: Callable[[], float]) -> None:
        self.__queue = queue
        self.__network = network
        self.__platform = platform
        self.__origin = origin
        self.__clock = clock
        self.__draining: Set[str] = set()
        self.__lock = threading.Lock()

    def is_draining(self, tag: str) -> bool:
        with self.__lock:
            return tag in self.__draining

    def drain(self, tag: str) -> int:
        """
        Replay every due item queued under `tag`.

        @return
          The number of items delivered during this cycle.
        """
        with self.__lock:
            if tag in self.__draining:
                logger.info('Tag {} is already draining. Skipping this trigger.'.format(tag))
                return 0
            self.__draining.add(tag)

        try:
            flushed = self._drain(tag)
        finally:
            with self.__lock:
                self.__draining.discard(tag)

        if flushed > 0:
            try:
                self.__platform.broadcast(SYNC_FLUSHED, {'tag': tag, 'flushed': flushed})
            except Exception:
                logger.exception('Could not announce that tag {} was flushed'.format(tag))
        return flushed

    def _drain(self, tag: str) -> int:
        self.__queue.purge_expired()

        flushed = 0
        now = self.__clock()
        items = self.__queue.pending(tag)
        logger.info('Draining {} queued requests under tag {}.'.format(len(items), tag))

        for item in items:
            if item.is_expired(now):
                logger.info('Queued request {} expired before it could be replayed.'.format(item.id))
                self.__queue.discard(item.id)
                continue

            if not item.is_due(now):
                continue

            outcome = self.replay(item)
            if outcome is ReplayOutcome.DELIVERED:
                self.__queue.mark_succeeded(item.id)
                flushed += 1
            elif outcome is ReplayOutcome.REJECTED:
                logger.warning('Origin rejected queued request {} ({} {}). Discarding it.'.format(
                    item.id, item.method, item.url))
                self.__queue.discard(item.id)
            else:
                self.__queue.mark_failed(item)

        logger.info('Delivered {} queued requests under tag {}.'.format(flushed, tag))
        return flushed

    def replay(self, item: QueueItem) -> ReplayOutcome:
        method = item.method.upper()
        headers = apply_credentials(item.headers, item.credentials, item.url, self.__origin)
        headers[REPLAY_HEADER] = '1'
        ensure_idempotency_header(headers, item.fingerprint)

        request = Request(method=method,
                          uri=item.url,
                          headers=headers,
                          body=item.body if method not in ('GET', 'HEAD') else None,
                          credentials=item.credentials)
        try:
            response = self.__network.fetch(request)
        except NetworkError:
            return ReplayOutcome.FAILED

        outcome = classify_status(response.status)
        logger.info('Replay of queued request {} answered {}: {}.'.format(item.id, response.status, outcome.value))
        return outcome
