from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
from io import BytesIO
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
from typing import Callable, List, Mapping, Optional

from .model import CacheEntry, Request, Response
from .storage import Storage, StorageUnavailable
from .util import clamp


logger = logging.getLogger(__name__)


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache has a relatively narrow scope: to remember a response such that it can be recalled later for a
    matching request. Note that this deliberately precludes responsibilities such as expiry and trimming; those belong
    to `RuntimeCacheStore`, which keeps the metadata that drives them.
    """

    @abstractmethod
    def get(self, request: Request) -> Optional[CacheEntry]:
        """
        Retrieve a cached response matching `request`.

        @param request
          The request to look up in the cache.
        @return
          A cached response for `request`, or `None` if there is no valid one.
        """

    @abstractmethod
    def add(self, request: Request, response: Response) -> Optional[CacheEntry]:
        """
        Add a response to the cache.

        This should only be called if there is not already a cached response for `request`. Any prior items should first
        be `delete()`d.

        The body stream from `response` is consumed as part of caching. The component using the cache should be sure to
        read from the returned entry's response body instead.

        @param request
          The request for which a response should be cached.
        @param response
          The response to cache.
        @return
          A cached entry, or `None` if the cache could not cache the response.
        """

    @abstractmethod
    def delete(self, request: Request) -> None:
        """
        Delete a response from the cache.

        @param request
            A request to find in the cache. The corresponding response will be deleted.
        """

    @abstractmethod
    def uris(self) -> List[str]:
        """
        The URIs of every entry currently in the cache, in no particular order.
        """

    def close(self):
        """
        Close any resources associated with the cache.
        """


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _vary_keys(response: Response) -> List[str]:
    vary = _header(response.headers, 'Vary') or ''
    return [key.strip() for key in vary.split(',') if key.strip()]


class HttpAwareCache(Cache):
    """
    Augments a cache with HTTP-specific knowledge.

    - Only successful responses to GET requests are stored.
    - A stored entry only matches requests that agree on all of its Vary headers.
    """

    def __init__(self, implementation: Cache) -> None:
        self.__impl = implementation

    def get(self, request: Request) -> Optional[CacheEntry]:
        logger.info('Delegating cache lookup to decorated cache.')
        entry = self.__impl.get(request)
        if entry is None:
            logger.info('Decorated cache did not find a matching cache entry.')
            return None

        # region Only serve response statuses that make sense to cache.
        if not self._is_cachable_status_code(entry.response.status):
            logger.info('Status code {} is not cachable'.format(entry.response.status))
            return None
        if not self._is_cachable_method(entry.request.method):
            logger.info('Method {} is not cachable'.format(entry.request.method))
            return None
        # endregion

        # region Only serve if all specific Vary headers match.
        for key in _vary_keys(entry.response):
            if key == '*':
                logger.info('Cache entry is rejected because it varies on everything.')
                return None

            expected_value = _header(entry.request.headers, key)
            value = _header(request.headers, key)
            if expected_value != value:
                logger.info('Cache entry is rejected because the value for a Vary header is not equal to the value '
                            'in the original request. Header: {}. Expected value: {}. Actual value: {}'.format(
                                key, expected_value, value))
                return None
        # endregion

        logger.info('Cache entry passed all HTTP checks. Returning entry from cache.')

        return entry

    def add(self, request: Request, response: Response) -> Optional[CacheEntry]:
        if not self._is_cachable_status_code(response.status):
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(response.status))
            return None
        if not self._is_cachable_method(request.method):
            logger.info('Refusing to create cache entry. Method {} is not cachable.'.format(request.method))
            return None
        if '*' in _vary_keys(response):
            logger.info('Refusing to create cache entry. The response varies on everything.')
            return None

        logger.info('Delegating cache entry creation to decorated cache.')
        return self.__impl.add(request, response)

    def delete(self, request: Request) -> None:
        logger.info('Delegating cache entry deletion to decorated cache.')
        self.__impl.delete(request)

    def uris(self) -> List[str]:
        return self.__impl.uris()

    def close(self):
        self.__impl.close()

    def _is_cachable_status_code(self, status: int) -> bool:
        return 200 <= status < 300

    def _is_cachable_method(self, method: str) -> bool:
        # HEAD responses have no body and would clobber the GET entry under the same URL.
        return method.upper() == 'GET'


@dataclass
class FileCacheResponseModel:
    status: int
    reason: str
    headers: Mapping[str, str]
    body_path: Path


@dataclass
class FileCacheEntryModel:
    entry_path: Path
    request: Request
    response: FileCacheResponseModel


class CorruptEntry(Exception):
    def __init__(self, entry_path: Path):
        super().__init__()
        self.__entry_path = entry_path

    @property
    def entry_path(self) -> Path:
        return self.__entry_path


class EntryExists(Exception):
    pass


class FileCache(Cache):
    """
    Stores response bodies on disk, addressed by a hash of the request URI.
    """

    def __init__(self, directory: Path, cache_directory_levels: int) -> None:
        """
        Initialize the file cache.

        @param directory
          The path to the root directory of the cache.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        """
        self.__directory = Path(directory)
        self.__entry_directory = self.__directory / 'entries'
        self.__body_directory = self.__directory / 'bodies'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)

    def _get_path(self, uri: str) -> Path:
        hashed = hashlib.sha256(uri.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        return Path(*subdirectories)

    def _load_entry(self, entry_path: Path) -> FileCacheEntryModel:
        """
        Read a cache entry from a file.

        @param entry_path
            The path to the entry file.
        @return
            The decoded contents of the file.
        @throws FileNotFoundError
            If there is no entry file.
        @throws CorruptEntry
            If the entry file could not be parsed.
        """
        try:
            with open(entry_path, 'r') as f:
                entry = json.load(f)
            return FileCacheEntryModel(entry_path=entry_path,
                                       request=Request(
                                           method=entry['request']['method'],
                                           uri=entry['request']['uri'],
                                           headers=entry['request']['headers']
                                       ),
                                       response=FileCacheResponseModel(
                                           status=entry['response']['status'],
                                           reason=entry['response']['reason'],
                                           headers=entry['response']['headers'],
                                           body_path=self.__body_directory / Path(entry['response']['body'])))
        except (KeyError, TypeError, ValueError, UnicodeDecodeError):
            raise CorruptEntry(entry_path)

    def get(self, request: Request) -> Optional[CacheEntry]:
        entry_path = self.__entry_directory / self._get_path(request.uri)
        try:
            logger.info('Looking at the file system for a cache entry matching the request.')
            entry_model = self._load_entry(entry_path)
            if entry_model.request.uri != request.uri:
                logger.warning('Entry file {} belongs to a different URI.'.format(entry_path))
                return None
        except CorruptEntry as e:
            logger.warning('Found a corrupt cache entry. Deleting the entry file.')
            e.entry_path.unlink()
            return None
        except FileNotFoundError:
            logger.info('No matching cache entry found.')
            return None

        try:
            with open(entry_model.response.body_path, 'rb') as f:
                body = f.read()
        except FileNotFoundError:
            logger.warning('The body file of a cache entry is missing. Deleting the entry file.')
            entry_model.entry_path.unlink()
            return None

        logger.info('Loaded entry file. Returning the cache entry')
        return CacheEntry(
            request=entry_model.request,
            response=Response(
                status=entry_model.response.status,
                reason=entry_model.response.reason,
                headers=entry_model.response.headers,
                body=BytesIO(body)
            )
        )

    def add(self, request: Request, response: Response) -> CacheEntry:
        logger.info('Building path to the entry file.')
        entry_path = self.__entry_directory / self._get_path(request.uri)
        if entry_path.exists():
            logger.warning('Aborting. The entry file already exists: {}'.format(entry_path))
            raise EntryExists('I refuse to overwrite a cache entry')

        logger.info('Building randomized path to the body file.')
        # We use a randomized body path as the entry can point to it anyways.
        body_path = self.__body_directory / self._split_path(os.urandom(32).hex())

        serialized = {
            'request': {
                'method': request.method,
                'uri': request.uri,
                'headers': dict(request.headers),
            },
            'response': {
                'status': response.status,
                'reason': response.reason,
                'headers': dict(response.headers),
                'body': str(body_path.relative_to(self.__body_directory))
            }
        }

        body = response.body.read()

        logger.info('Writing the body to a temporary file, then moving it into its permanent location.')
        # The entry file is written last, so a reader never sees an entry whose body is incomplete.
        self.__directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(mode='wb', delete=False, dir=self.__directory) as temp_body_file:
            temp_body_file.write(body)
        body_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(temp_body_file.name, str(body_path))

        logger.info('Creating entry file that points to the permanent body file')
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        with open(entry_path, 'w') as f:
            json.dump(serialized, f)

        return CacheEntry(
            request,
            Response(status=response.status, reason=response.reason, headers=response.headers, body=BytesIO(body))
        )

    def delete(self, request: Request) -> None:
        entry_path = self.__entry_directory / self._get_path(request.uri)
        try:
            logger.info('Looking at the file system for a cache entry matching the request so that we can delete both the entry and the associated body.')
            entry_model = self._load_entry(entry_path)
            logger.info('Found a matching cache entry. Marking both the entry file and the body file for deletion.')
            paths_to_delete = [entry_model.entry_path, entry_model.response.body_path]
        except CorruptEntry as e:
            logger.warning('Found a corrupt cache entry. Marking only the entry file for deletion.')
            paths_to_delete = [e.entry_path]
        except FileNotFoundError:
            logger.info('No matching cache entry found. Nothing to delete.')
            return

        for path in paths_to_delete:
            try:
                logger.info('Deleting {}'.format(path))
                path.unlink()
            except FileNotFoundError:
                logger.info('{} was already gone.'.format(path))

    def uris(self) -> List[str]:
        if not self.__entry_directory.exists():
            return []

        result = []
        for entry_path in self.__entry_directory.rglob('*'):
            if not entry_path.is_file():
                continue
            try:
                result.append(self._load_entry(entry_path).request.uri)
            except CorruptEntry as e:
                logger.warning('Found a corrupt cache entry while listing. Deleting the entry file.')
                e.entry_path.unlink()
            except FileNotFoundError:
                # Deleted by a concurrent writer while we were listing.
                continue
        return result


class RuntimeCacheStore:
    """
    A bounded, TTL-aware cache of network responses.

    Bodies live in a `Cache`; the time each URL was cached lives in the durable
    store. Trimming evicts in insertion order (FIFO), which only approximates
    LRU: reads do not refresh an entry's position.
    """

    def __init__(self,
                 bodies: Cache,
                 storage: Storage,
                 max_entries: int,
                 max_age_seconds: int,
                 clock: Callable[[], float]) -> None:
        self.__bodies = bodies
        self.__storage = storage
        self.__max_entries = max_entries
        self.__max_age_seconds = max_age_seconds
        self.__clock = clock
        # Bodies left by an earlier process, or written while metadata could not be, are only found by a full scan.
        self.__reconcile = True

    @property
    def max_entries(self) -> int:
        return self.__max_entries

    @property
    def max_age_seconds(self) -> int:
        return self.__max_age_seconds

    def read(self, request: Request, evict_stale: bool = True) -> Optional[CacheEntry]:
        """
        Look up the cached response for `request`.

        @param evict_stale
          When set, an entry older than the configured maximum age is deleted and
          reported as a miss. Otherwise it is returned as is.
        """
        try:
            entry = self.__bodies.get(request)
        except OSError as e:
            logger.warning('Could not read the cached body of {}: {}. Treating it as a miss.'.format(request.uri, e))
            return None
        if entry is None:
            return None

        if evict_stale and not self.is_fresh(request.uri, self.__max_age_seconds):
            logger.info('Cache entry for {} outlived {}s. Evicting it.'.format(request.uri, self.__max_age_seconds))
            self._evict(request.uri)
            return None
        return entry

    def write(self, request: Request, response: Response, trim: bool = True) -> Optional[CacheEntry]:
        """
        Store `response` for `request` if it is cacheable, replacing any prior entry.

        @return
          The stored entry, whose body should be read instead of `response.body`, or `None` if nothing was stored.
        """
        if not response.ok:
            logger.info('Not caching {}. Status {} is not a success.'.format(request.uri, response.status))
            return None
        if request.method.upper() != 'GET':
            logger.info('Not caching {}. Only GET responses are cached.'.format(request.uri))
            return None

        try:
            self.__bodies.delete(request)
            entry = self.__bodies.add(request, response)
        except (EntryExists, OSError) as e:
            logger.warning('Could not store a response for {}: {!r}. Leaving the cache as is.'.format(request.uri, e))
            return None
        if entry is None:
            return None

        try:
            self.__storage.put_cache_meta(request.uri, self.__clock())
        except StorageUnavailable:
            logger.warning('Could not record when {} was cached.'.format(request.uri))
            self.__reconcile = True

        if trim:
            self.trim(self.__max_entries)
        return entry

    def is_fresh(self, url: str, max_age_seconds: int) -> bool:
        if max_age_seconds <= 0:
            return True
        try:
            cached_at = self.__storage.get_cache_meta(url)
        except StorageUnavailable:
            logger.warning('Cache metadata is unavailable. Treating {} as fresh.'.format(url))
            return True
        if cached_at is None:
            return True
        return self.__clock() - cached_at <= max_age_seconds

    def trim(self, max_entries: int) -> int:
        """
        Evict the oldest-inserted entries until at most `max_entries` remain.

        Entries are counted from the metadata. The body store itself is only
        scanned on the first trim and after metadata could not be written:
        bodies without metadata are then considered older than any entry with
        metadata, and metadata without a body is dropped.

        @return
          The number of entries evicted.
        """
        if max_entries < 1:
            return 0

        try:
            recorded = self.__storage.cache_meta_urls()
        except StorageUnavailable:
            logger.warning('Cache metadata is unavailable. Skipping trim.')
            return 0

        ordered = recorded
        if self.__reconcile:
            try:
                stored = set(self.__bodies.uris())
            except OSError as e:
                logger.warning('Could not list the runtime cache: {}. Skipping trim.'.format(e))
                return 0
            self.__reconcile = False

            for url in recorded:
                if url not in stored:
                    self._forget(url)
            recorded_set = set(recorded)
            ordered = sorted(stored - recorded_set) + [url for url in recorded if url in stored]

        excess = ordered[:max(0, len(ordered) - max_entries)]
        for url in excess:
            self._evict(url)
        if excess:
            logger.info('Trimmed {} runtime cache entries to stay within {}.'.format(len(excess), max_entries))
        return len(excess)

    def __len__(self) -> int:
        return len(self.__bodies.uris())

    def _evict(self, url: str) -> None:
        try:
            self.__bodies.delete(Request(method='GET', uri=url, headers={}))
        except OSError as e:
            logger.warning('Could not delete the cached body of {}: {}.'.format(url, e))
            self.__reconcile = True
        self._forget(url)

    def _forget(self, url: str) -> None:
        try:
            self.__storage.delete_cache_meta(url)
        except StorageUnavailable:
            logger.warning('Could not delete cache metadata for {}.'.format(url))
