from io import BytesIO
import json
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Optional
from unittest import TestCase

from ddt import ddt, data, unpack
from mockito import mock, unstub, verify, when

from offline.cache import Cache, EntryExists, FileCache, HttpAwareCache, RuntimeCacheStore
from offline.model import CacheEntry, Request, Response
from offline.storage import Storage, StorageUnavailable

from support import FakeClock, get, response


GOOGLE_PATH = Path('9', '8', 'c', 'e', '0', 'b4f1e97102727131a3807371ff3494db4343c7ca41027ad7271a47af279')


class TestFileCache(TestCase):
    def test_get(self):
        request = Request(method='GET', uri='http://google.ca', headers={'Accept': 'application/pdf'})
        expected_body_contents = b'some contents'

        with TemporaryDirectory() as directory:
            directory = Path(directory)

            body_path = directory / 'bodies' / 'path' / 'to' / 'body'
            body_path.parent.mkdir(parents=True, exist_ok=True)
            with open(body_path, 'wb') as f:
                f.write(expected_body_contents)

            entry_path = directory / 'entries' / GOOGLE_PATH
            entry_path.parent.mkdir(parents=True, exist_ok=True)
            with open(entry_path, 'w') as f:
                json.dump({
                    'request': {'method': 'GET', 'uri': 'http://google.ca', 'headers': {'Accept': 'application/pdf'}},
                    'response': {
                        'status': 200,
                        'reason': 'OK',
                        'headers': {'Vary': 'Accept', 'ETag': 'gibberish'},
                        'body': str(Path('path', 'to', 'body')),
                    },
                }, f)

            entry = FileCache(directory, 5).get(request)

            self.assertEqual(request, entry.request)
            self.assertEqual(200, entry.response.status)
            self.assertEqual('OK', entry.response.reason)
            self.assertEqual({'Vary': 'Accept', 'ETag': 'gibberish'}, entry.response.headers)
            # Need to check file contents, not file descriptors.
            self.assertEqual(expected_body_contents, entry.response.body.read())

    def test_get_without_entry_file_is_a_miss(self):
        with TemporaryDirectory() as directory:
            self.assertIsNone(FileCache(Path(directory), 5).get(get('http://google.ca')))

    def test_get_deletes_corrupt_entry(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            entry_path = directory / 'entries' / GOOGLE_PATH
            entry_path.parent.mkdir(parents=True, exist_ok=True)
            entry_path.write_text('{"request": ')

            self.assertIsNone(FileCache(directory, 5).get(get('http://google.ca')))
            self.assertFalse(entry_path.exists(), 'A corrupt entry file should be deleted')

    def test_add(self):
        request = Request(method='GET', uri='http://google.ca',
                          headers={'Accept': 'application/pdf', 'X-something-else': 'some value'})
        incoming = Response(status=200, reason='OK', headers={'Vary': 'Accept', 'ETag': 'gibberish'},
                            body=BytesIO(b'some contents'))

        with TemporaryDirectory() as directory:
            directory = Path(directory)
            expected_path = directory / 'entries' / GOOGLE_PATH

            cache = FileCache(directory, 5)
            cache_entry = cache.add(request, incoming)

            self.assertTrue(expected_path.exists(), 'The cache should create the file for the cache entry')
            with open(expected_path, 'r') as f:
                entry_contents = json.load(f)

            # The body path is deliberately not predictable.
            del entry_contents['response']['body']
            self.assertEqual({
                'request': {
                    'method': 'GET',
                    'uri': 'http://google.ca',
                    'headers': {'Accept': 'application/pdf', 'X-something-else': 'some value'},
                },
                'response': {
                    'status': 200,
                    'reason': 'OK',
                    'headers': {'Vary': 'Accept', 'ETag': 'gibberish'},
                },
            }, entry_contents)
            self.assertEqual(b'some contents', cache_entry.response.body.read())

    def test_add_can_be_followed_by_get(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(get('https://app.test/a.css'), response(body=b'body { }'))

            entry = cache.get(get('https://app.test/a.css'))

            self.assertEqual(b'body { }', entry.response.body.read())
            self.assertEqual(['https://app.test/a.css'], cache.uris())

    def test_add_refuses_to_overwrite(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(get('https://app.test/a.css'), response(body=b'one'))

            with self.assertRaises(EntryExists):
                cache.add(get('https://app.test/a.css'), response(body=b'two'))

    def test_delete(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(get('https://app.test/a.css'), response(body=b'one'))

            cache.delete(get('https://app.test/a.css'))
            # Deleting twice is harmless.
            cache.delete(get('https://app.test/a.css'))

            self.assertIsNone(cache.get(get('https://app.test/a.css')))
            self.assertEqual([], cache.uris())
            self.assertEqual([], [p for p in (Path(directory) / 'bodies').rglob('*') if p.is_file()])


@ddt
class TestHttpAwareCache(TestCase):
    def setUp(self):
        self.__wrapped = mock(Cache)
        self.__sut = HttpAwareCache(self.__wrapped)

    def tearDown(self):
        unstub()

    @data(
        (
            # When the decorated cache does not have an element, neither does the HTTP-aware cache.
            get('http://google.ca', {'Accept': 'application/pdf'}),
            None,
            False,
        ),
        (
            # When the cached entry is a 5xx error, it does not qualify for caching by HTTP rules.
            get('http://google.ca', {'Accept': 'application/pdf'}),
            CacheEntry(get('http://google.ca', {'Accept': 'application/pdf'}),
                       response(status=500, reason='Internal Server Error')),
            False,
        ),
        (
            # When the new request has a different value than the cached request for a Vary header, the cache entry is
            # not matched.
            get('http://google.ca', {'X-MY-COOL-HEADER': '53'}),
            CacheEntry(get('http://google.ca', {'X-MY-COOL-HEADER': '52'}),
                       response(headers={'Vary': 'X-MY-COOL-HEADER'})),
            False,
        ),
        (
            # When the new request is missing a Vary header the cached request had, the cache entry is not matched.
            get('http://google.ca', {'Accept': 'application/pdf'}),
            CacheEntry(get('http://google.ca', {'Accept': 'application/pdf', 'X-MY-COOL-HEADER': '52'}),
                       response(headers={'Vary': 'X-MY-COOL-HEADER'})),
            False,
        ),
        (
            # When the response varies on everything, the cache entry is never matched.
            get('http://google.ca'),
            CacheEntry(get('http://google.ca'), response(headers={'Vary': '*'})),
            False,
        ),
        (
            # When neither request has a Vary header, they agree on it.
            get('http://google.ca', {'Accept': 'application/pdf'}),
            CacheEntry(get('http://google.ca', {'Accept': 'application/pdf'}),
                       response(headers={'Vary': 'X-MY-COOL-HEADER'})),
            True,
        ),
        (
            # Vary header names are matched case-insensitively.
            get('http://google.ca', {'x-my-cool-header': '52'}),
            CacheEntry(get('http://google.ca', {'X-MY-COOL-HEADER': '52'}),
                       response(status=203, headers={'vary': 'Accept, X-My-Cool-Header'})),
            True,
        ),
    )
    @unpack
    def test_get(self, request: Request, decorated_result: Optional[CacheEntry], expect_hit: bool):
        # region Set up
        when(self.__wrapped).get(request).thenReturn(decorated_result)
        # endregion

        # region Exercise
        entry = self.__sut.get(request)
        # endregion

        # region Verify
        if expect_hit:
            self.assertIs(decorated_result, entry)
        else:
            self.assertIsNone(entry)
        # endregion

    @data(
        # When the status code is 200, the response can be cached.
        (get('http://google.ca'), response(status=200), True),
        # When the status code is 204, the response can be cached.
        (get('http://google.ca'), response(status=204), True),
        # When the status code is 500, the response is not cached.
        (get('http://google.ca'), response(status=500), False),
        # Redirects are not cached.
        (get('http://google.ca'), response(status=301), False),
        # Only GET responses are cached.
        (Request(method='HEAD', uri='http://google.ca', headers={}), response(status=200), False),
        # A response that varies on everything is not cached.
        (get('http://google.ca'), response(status=200, headers={'Vary': '*'}), False),
    )
    @unpack
    def test_add(self, request: Request, incoming: Response, expected_to_be_cached: bool):
        # region set up
        when(self.__wrapped).add(request, incoming).thenReturn(CacheEntry(request, incoming))
        # endregion

        result = self.__sut.add(request, incoming)

        self.assertEqual(CacheEntry(request, incoming) if expected_to_be_cached else None, result)
        verify(self.__wrapped, 1 if expected_to_be_cached else 0).add(request, incoming)

    def test_delete(self):
        request = get('http://google.ca')
        when(self.__wrapped).delete(request).thenReturn(None)

        self.__sut.delete(request)

        verify(self.__wrapped).delete(request)


class TestRuntimeCacheStore(TestCase):
    def setUp(self):
        self.__directory = TemporaryDirectory()
        directory = Path(self.__directory.name)
        self.__clock = FakeClock()
        self.__storage = Storage(directory / 'offline.sqlite3')
        self.__bodies = HttpAwareCache(FileCache(directory / 'runtime', 2))
        self.__sut = RuntimeCacheStore(self.__bodies, self.__storage, max_entries=3, max_age_seconds=60,
                                       clock=self.__clock)

    def tearDown(self):
        self.__directory.cleanup()
        unstub()

    def _write(self, uri: str, body: bytes = b'x'):
        self.__clock.advance(1)
        return self.__sut.write(get(uri), response(body=body))

    def test_write_then_read(self):
        entry = self._write('https://app.test/a', b'alpha')

        self.assertEqual(b'alpha', entry.response.body.read())
        self.assertEqual(b'alpha', self.__sut.read(get('https://app.test/a')).response.body.read())
        self.assertEqual(self.__clock.now, self.__storage.get_cache_meta('https://app.test/a'))

    def test_write_replaces_previous_entry(self):
        self._write('https://app.test/a', b'old')
        self._write('https://app.test/a', b'new')

        self.assertEqual(b'new', self.__sut.read(get('https://app.test/a')).response.body.read())
        self.assertEqual(1, len(self.__sut))

    def test_eviction_bound(self):
        uris = ['https://app.test/{}'.format(i) for i in range(5)]
        for uri in uris:
            self._write(uri)

        self.assertEqual(3, len(self.__sut))
        self.assertEqual(sorted(uris[2:]), sorted(self.__bodies.uris()))
        self.assertEqual(uris[2:], self.__storage.cache_meta_urls(), 'Metadata should be removed in lock-step')

    def test_eviction_ignores_reads(self):
        for uri in ('https://app.test/a', 'https://app.test/b', 'https://app.test/c'):
            self._write(uri)
        self.__sut.read(get('https://app.test/a'))

        self._write('https://app.test/d')

        self.assertIsNone(self.__sut.read(get('https://app.test/a')), 'Eviction is by insertion, not by access')

    def test_rewrite_moves_entry_to_the_back(self):
        for uri in ('https://app.test/a', 'https://app.test/b', 'https://app.test/c', 'https://app.test/a'):
            self._write(uri)

        self._write('https://app.test/d')

        self.assertIsNone(self.__sut.read(get('https://app.test/b')))
        self.assertIsNotNone(self.__sut.read(get('https://app.test/a')))

    def test_expired_entry_is_evicted_on_read(self):
        self._write('https://app.test/a')
        self.__clock.advance(61)

        self.assertIsNone(self.__sut.read(get('https://app.test/a')))
        self.assertEqual([], self.__bodies.uris())
        self.assertIsNone(self.__storage.get_cache_meta('https://app.test/a'))

    def test_stale_entry_can_be_read_without_eviction(self):
        self._write('https://app.test/a')
        self.__clock.advance(61)

        self.assertIsNotNone(self.__sut.read(get('https://app.test/a'), evict_stale=False))
        self.assertFalse(self.__sut.is_fresh('https://app.test/a', 60))

    def test_missing_metadata_is_fresh(self):
        self.assertTrue(self.__sut.is_fresh('https://app.test/never-cached', 60))

    def test_unsuccessful_responses_are_not_written(self):
        self.assertIsNone(self.__sut.write(get('https://app.test/a'), response(status=404)))
        self.assertIsNone(self.__sut.write(Request(method='HEAD', uri='https://app.test/a', headers={}), response()))
        self.assertEqual(0, len(self.__sut))

    def test_trim_drops_metadata_without_body(self):
        self.__storage.put_cache_meta('https://app.test/gone', self.__clock())
        self._write('https://app.test/a')

        self.assertEqual(['https://app.test/a'], self.__storage.cache_meta_urls())


class TestRuntimeCacheStoreWithoutStorage(TestCase):
    def setUp(self):
        self.__directory = TemporaryDirectory()
        self.__storage = mock(Storage)
        when(self.__storage).get_cache_meta(...).thenRaise(StorageUnavailable('disk is gone'))
        when(self.__storage).put_cache_meta(...).thenRaise(StorageUnavailable('disk is gone'))
        when(self.__storage).cache_meta_urls().thenRaise(StorageUnavailable('disk is gone'))
        self.__sut = RuntimeCacheStore(HttpAwareCache(FileCache(Path(self.__directory.name), 2)), self.__storage,
                                       max_entries=10, max_age_seconds=60, clock=FakeClock())

    def tearDown(self):
        self.__directory.cleanup()
        unstub()

    def test_fails_open(self):
        entry = self.__sut.write(get('https://app.test/a'), response(body=b'alpha'))

        self.assertIsNotNone(entry, 'The body should still be cached without metadata')
        self.assertTrue(self.__sut.is_fresh('https://app.test/a', 60))
        self.assertEqual(b'alpha', self.__sut.read(get('https://app.test/a')).response.body.read())
        self.assertEqual(0, self.__sut.trim(1))


class TestRuntimeCacheStoreWithBrokenBodies(TestCase):
    def setUp(self):
        self.__directory = TemporaryDirectory()
        self.__storage = Storage(Path(self.__directory.name) / 'offline.sqlite3')
        self.__bodies = mock(Cache)
        self.__sut = RuntimeCacheStore(self.__bodies, self.__storage, max_entries=10, max_age_seconds=60,
                                       clock=FakeClock())

    def tearDown(self):
        self.__directory.cleanup()
        unstub()

    def test_unreadable_body_is_a_miss(self):
        when(self.__bodies).get(...).thenRaise(PermissionError('denied'))

        self.assertIsNone(self.__sut.read(get('https://app.test/a')))
        self.assertIsNone(self.__sut.read(get('https://app.test/a'), evict_stale=False))

    def test_unwritable_body_is_not_cached(self):
        when(self.__bodies).delete(...).thenRaise(PermissionError('denied'))

        self.assertIsNone(self.__sut.write(get('https://app.test/a'), response(body=b'alpha')))
        self.assertIsNone(self.__storage.get_cache_meta('https://app.test/a'))

    def test_unlistable_body_store_skips_trim(self):
        self.__storage.put_cache_meta('https://app.test/a', 1.0)
        when(self.__bodies).uris().thenRaise(IsADirectoryError('entries'))

        self.assertEqual(0, self.__sut.trim(1))
        self.assertEqual(['https://app.test/a'], self.__storage.cache_meta_urls())


class TestRuntimeCacheStoreTrimming(TestCase):
    def setUp(self):
        self.__directory = TemporaryDirectory()
        self.__clock = FakeClock()
        self.__storage = Storage(Path(self.__directory.name) / 'offline.sqlite3')
        self.__bodies = mock(Cache)
        when(self.__bodies).delete(...).thenReturn(None)
        when(self.__bodies).add(...).thenAnswer(lambda request, response: CacheEntry(request, response))
        when(self.__bodies).uris().thenReturn(['https://app.test/0'])
        self.__sut = RuntimeCacheStore(self.__bodies, self.__storage, max_entries=2, max_age_seconds=60,
                                       clock=self.__clock)

    def tearDown(self):
        self.__directory.cleanup()
        unstub()

    def test_body_store_is_listed_once(self):
        for i in range(4):
            self.__clock.advance(1)
            self.__sut.write(get('https://app.test/{}'.format(i)), response(body=b'x'))

        verify(self.__bodies, times=1).uris()
        self.assertEqual(['https://app.test/2', 'https://app.test/3'], self.__storage.cache_meta_urls())
