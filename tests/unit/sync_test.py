from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import TestCase

from ddt import ddt, data, unpack
from mockito import mock, unstub, verify, when

from offline.config import SyncConfig
from offline.model import QueueItem
from offline.network import Network, NetworkError
from offline.platform import Platform
from offline.queue import MutationQueue
from offline.storage import Storage
from offline.sync import ReplayOutcome, SyncProcessor, classify_status

from support import FakeClock, response


def order(body=b'{"sku":"A1"}', tag='default', headers=None, url='https://app.test/api/orders',
          credentials='same-origin'):
    return QueueItem(url=url, method='POST', headers=dict(headers or {}), body=body, tag=tag,
                     credentials=credentials)


@ddt
class TestClassifyStatus(TestCase):
    @data(
        (200, ReplayOutcome.DELIVERED),
        (201, ReplayOutcome.DELIVERED),
        (204, ReplayOutcome.DELIVERED),
        (400, ReplayOutcome.REJECTED),
        (404, ReplayOutcome.REJECTED),
        (409, ReplayOutcome.REJECTED),
        (302, ReplayOutcome.FAILED),
        (500, ReplayOutcome.FAILED),
        (503, ReplayOutcome.FAILED),
    )
    @unpack
    def test_classify_status(self, status, expected):
        self.assertEqual(expected, classify_status(status))


class TestSyncProcessor(TestCase):
    def setUp(self):
        self.__directory = TemporaryDirectory()
        self.__clock = FakeClock()
        self.__storage = Storage(Path(self.__directory.name) / 'offline.sqlite3')
        self.__queue = MutationQueue(self.__storage, SyncConfig(), self.__clock)
        self.__network = mock(Network)
        self.__platform = mock(Platform)
        when(self.__platform).broadcast(...).thenReturn(None)
        self.__sut = SyncProcessor(self.__queue, self.__network, self.__platform, 'https://app.test', self.__clock)
        self.__sent = []

    def tearDown(self):
        self.__directory.cleanup()
        unstub()

    def _origin_answers(self, status):
        def answer(request, timeout=None):
            self.__sent.append(request)
            return response(status=status)
        when(self.__network).fetch(...).thenAnswer(answer)

    def _origin_unreachable(self):
        def answer(request, timeout=None):
            self.__sent.append(request)
            raise NetworkError('offline')
        when(self.__network).fetch(...).thenAnswer(answer)

    def test_scenario_retry_then_deliver(self):
        self.__queue.enqueue(order())
        self._origin_unreachable()

        self.assertEqual(0, self.__sut.drain('default'))

        [item] = self.__storage.items('default')
        self.assertEqual(1, item.attempts)
        self.assertEqual(self.__clock.now + 30, item.next_attempt_at)
        verify(self.__platform, 0).broadcast(...)

        self.__clock.advance(30)
        self._origin_answers(200)

        self.assertEqual(1, self.__sut.drain('default'))
        self.assertEqual([], self.__storage.items('default'))
        verify(self.__platform).broadcast('SYNC_FLUSHED', {'tag': 'default', 'flushed': 1})

    def test_client_error_is_terminal(self):
        self.__queue.enqueue(order())
        self._origin_answers(404)

        self.assertEqual(0, self.__sut.drain('default'))

        self.assertEqual([], self.__storage.items('default'))
        self.assertEqual(1, len(self.__sent))

    def test_server_error_is_retried(self):
        self.__queue.enqueue(order())
        self._origin_answers(503)

        self.__sut.drain('default')

        [item] = self.__storage.items('default')
        self.assertEqual(1, item.attempts)

    def test_item_is_dropped_after_max_attempts(self):
        self.__queue.enqueue(order())
        self._origin_unreachable()

        for _ in range(5):
            self.__sut.drain('default')
            self.__clock.advance(3600)

        self.assertEqual(5, len(self.__sent))
        self.assertEqual([], self.__storage.items('default'))

    def test_expiry_takes_precedence_over_schedule(self):
        self.__queue.enqueue(order())
        self._origin_unreachable()
        self.__sut.drain('default')
        self.__sent.clear()

        self.__clock.advance(86401)

        self.__sut.drain('default')

        self.assertEqual([], self.__storage.items('default'))
        self.assertEqual([], self.__sent, 'An expired item must not be replayed')

    def test_items_not_yet_due_are_skipped(self):
        self.__queue.enqueue(order())
        self._origin_unreachable()

        self.__sut.drain('default')
        self.__clock.advance(29)
        self.__sut.drain('default')

        self.assertEqual(1, len(self.__sent))

    def test_replays_earliest_due_first(self):
        self.__queue.enqueue(order(url='https://app.test/api/a'))
        self.__clock.advance(1)
        self.__queue.enqueue(order(url='https://app.test/api/b'))
        [first, _] = self.__storage.items('default')
        self.__queue.mark_failed(first)
        self.__clock.advance(100)
        self.__queue.enqueue(order(url='https://app.test/api/c'))
        self._origin_answers(200)

        self.assertEqual(3, self.__sut.drain('default'))
        self.assertEqual(['https://app.test/api/b', 'https://app.test/api/a', 'https://app.test/api/c'],
                         [request.uri for request in self.__sent])

    def test_other_tags_are_untouched(self):
        self.__queue.enqueue(order(tag='other'))
        self._origin_answers(200)

        self.assertEqual(0, self.__sut.drain('default'))
        self.assertEqual(1, len(self.__storage.items('other')))

    def test_replay_request(self):
        self.__queue.enqueue(order(headers={'Content-Type': 'application/json', 'Cookie': 'session=1'}))
        [item] = self.__storage.items('default')
        self._origin_answers(201)

        self.__sut.drain('default')

        [sent] = self.__sent
        self.assertEqual('POST', sent.method)
        self.assertEqual('https://app.test/api/orders', sent.uri)
        self.assertEqual(b'{"sku":"A1"}', sent.body)
        self.assertEqual('1', sent.headers['X-Offline-Replay'])
        self.assertEqual('offline-{}'.format(item.fingerprint), sent.headers['Idempotency-Key'])
        self.assertEqual('session=1', sent.headers['Cookie'])
        self.assertEqual('application/json', sent.headers['Content-Type'])

    def test_replay_without_credentials(self):
        self.__queue.enqueue(order(headers={'Cookie': 'session=1', 'Authorization': 'Bearer x'}, credentials='omit'))
        self._origin_answers(200)

        self.__sut.drain('default')

        [sent] = self.__sent
        self.assertNotIn('Cookie', sent.headers)
        self.assertNotIn('Authorization', sent.headers)

    def test_not_draining_after_cycle(self):
        self._origin_answers(200)

        self.__sut.drain('default')

        self.assertFalse(self.__sut.is_draining('default'))
