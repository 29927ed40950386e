import logging
from typing import Callable, List

from .config import SyncConfig
from .model import QueueItem
from .storage import Storage, StorageUnavailable
from .util import fingerprint, header_present


logger = logging.getLogger(__name__)


IDEMPOTENCY_HEADER = 'Idempotency-Key'


def idempotency_key(item_fingerprint: str) -> str:
    return 'offline-{}'.format(item_fingerprint)


def ensure_idempotency_header(headers: dict, item_fingerprint: str) -> None:
    if not header_present(headers, IDEMPOTENCY_HEADER):
        headers[IDEMPOTENCY_HEADER] = idempotency_key(item_fingerprint)


class MutationQueue:
    """
    Durable queue of mutating requests waiting to be replayed.

    Items are deduplicated by (fingerprint, tag): submitting the same request
    again while an earlier copy is pending refreshes that copy instead of adding
    a second one. Two enqueues racing each other may still both insert; the
    first successful replay satisfies both, and the origin can drop the second
    by its Idempotency-Key.

    No method raises when the durable store is unavailable. They report failure
    through their return value instead.
    """

    def __init__(self, storage: Storage, config: SyncConfig, clock: Callable[[], float]) -> None:
        self.__storage = storage
        self.__config = config
        self.__clock = clock

    def enqueue(self, item: QueueItem) -> bool:
        body_size = len(item.body or b'')
        if body_size > self.__config.max_body_bytes:
            logger.warning('Refusing to queue {} {}. Body of {} bytes exceeds {}.'.format(
                item.method, item.url, body_size, self.__config.max_body_bytes))
            return False

        now = self.__clock()
        item.method = item.method.upper()
        item.headers = dict(item.headers)
        item.fingerprint = item.fingerprint or fingerprint(item.method, item.url, item.body)
        ensure_idempotency_header(item.headers, item.fingerprint)

        try:
            existing = self._find_active(item.fingerprint, item.tag, now)
            if existing is not None:
                existing.updated_at = now
                existing.expires_at = max(existing.expires_at or 0, now + self.__config.max_age_seconds)
                existing.body = item.body
                existing.headers = item.headers
                self.__storage.update_item(existing)
                item.id = existing.id
                logger.info('Refreshed queued request {} ({} {}).'.format(existing.id, item.method, item.url))
                return True

            item.created_at = now
            item.updated_at = now
            item.attempts = 0
            item.next_attempt_at = now
            item.expires_at = now + self.__config.max_age_seconds
            item.id = self.__storage.insert_item(item)
            logger.info('Queued request {} ({} {}) under tag {}.'.format(item.id, item.method, item.url, item.tag))

            self._trim(self.__config.max_queue_entries)
            return True
        except StorageUnavailable:
            logger.warning('Could not queue {} {}. The durable store is unavailable.'.format(item.method, item.url))
            return False

    def pending(self, tag: str) -> List[QueueItem]:
        """
        Every item under `tag`, earliest-due first. Expired and not-yet-due items are included.
        """
        try:
            items = self.__storage.items(tag)
        except StorageUnavailable:
            logger.warning('Could not load queued requests for tag {}.'.format(tag))
            return []
        return sorted(items, key=lambda item: (item.due_at, item.id or 0))

    def dequeue_due(self, tag: str) -> List[QueueItem]:
        """
        The items under `tag` that may be replayed now, earliest-due first.
        """
        now = self.__clock()
        return [item for item in self.pending(tag) if not item.is_expired(now) and item.is_due(now)]

    def mark_succeeded(self, item_id: int) -> bool:
        return self._delete(item_id)

    def discard(self, item_id: int) -> bool:
        return self._delete(item_id)

    def mark_failed(self, item: QueueItem) -> bool:
        """
        Record a failed replay and schedule the next attempt.

        @return
          `True` if the item was rescheduled, `False` if it was given up on (or
          could not be updated).
        """
        attempts = (item.attempts or 0) + 1
        if attempts >= self.__config.max_attempts:
            logger.info('Giving up on queued request {} after {} attempts.'.format(item.id, attempts))
            self._delete(item.id)
            return False

        now = self.__clock()
        item.attempts = attempts
        item.next_attempt_at = now + self.retry_delay(attempts)
        item.updated_at = now
        try:
            self.__storage.update_item(item)
        except StorageUnavailable:
            logger.warning('Could not reschedule queued request {}.'.format(item.id))
            return False
        logger.info('Queued request {} failed attempt {}. Next attempt at {}.'.format(
            item.id, attempts, item.next_attempt_at))
        return True

    def retry_delay(self, attempts: int) -> int:
        delays = self.__config.retry_delays_seconds
        return delays[min(max(attempts - 1, 0), len(delays) - 1)]

    def purge_expired(self) -> int:
        try:
            purged = self.__storage.delete_expired_items(self.__clock())
        except StorageUnavailable:
            logger.warning('Could not purge expired queued requests.')
            return 0
        if purged:
            logger.info('Purged {} expired queued requests.'.format(purged))
        return purged

    def __len__(self) -> int:
        try:
            return self.__storage.count_items()
        except StorageUnavailable:
            return 0

    def _find_active(self, item_fingerprint: str, tag: str, now: float):
        for candidate in self.__storage.items_by_fingerprint(item_fingerprint, tag):
            if not candidate.is_expired(now):
                return candidate
        return None

    def _delete(self, item_id: int) -> bool:
        try:
            return self.__storage.delete_item(item_id)
        except StorageUnavailable:
            logger.warning('Could not delete queued request {}.'.format(item_id))
            return False

    def _trim(self, max_entries: int) -> None:
        items = self.__storage.items()
        if len(items) <= max_entries:
            return

        items.sort(key=lambda item: (item.updated_at or item.created_at or 0, item.id or 0))
        for item in items[:len(items) - max_entries]:
            logger.info('Queue is over {} entries. Evicting queued request {}.'.format(max_entries, item.id))
            self.__storage.delete_item(item.id)
