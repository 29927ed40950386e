"""
The single durable store scoped to an engine instance.

Two record sets live here: cache metadata (url -> cachedAt, in insertion order)
and the mutation queue (auto-id primary key, secondary indexes on tag and
fingerprint). Every public method is one short transaction on its own
connection, so each is atomic for the records it touches and nothing more.
Callers that need fail-open behaviour catch `StorageUnavailable`.
"""

from contextlib import contextmanager
import json
import logging
from pathlib import Path
import sqlite3
from typing import Iterator, List, Optional

from .model import QueueItem


logger = logging.getLogger(__name__)


class StorageUnavailable(Exception):
    """
    The durable store could not be opened, read or written.
    """


_QUEUE_COLUMNS = ('id', 'url', 'method', 'headers', 'body', 'credentials', 'created_at', 'updated_at',
                  'attempts', 'next_attempt_at', 'expires_at', 'tag', 'fingerprint')


class Storage:
    def __init__(self, path: Path, timeout: float = 5.0) -> None:
        self.__path = Path(path)
        self.__timeout = timeout
        self.__initialized = False

    @property
    def path(self) -> Path:
        return self.__path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            if not self.__initialized:
                self._create_tables()
            connection = sqlite3.connect(str(self.__path), timeout=self.__timeout)
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailable(str(e)) from e

        try:
            yield connection
            connection.commit()
        except sqlite3.Error as e:
            connection.rollback()
            raise StorageUnavailable(str(e)) from e
        finally:
            connection.close()

    def _create_tables(self) -> None:
        self.__path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(str(self.__path), timeout=self.__timeout)
        try:
            connection.execute('PRAGMA journal_mode=WAL')
            connection.executescript("""
                CREATE TABLE IF NOT EXISTS cache_meta (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL UNIQUE,
                    cached_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sync_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    headers TEXT NOT NULL DEFAULT '{}',
                    body BLOB,
                    credentials TEXT NOT NULL DEFAULT 'same-origin',
                    created_at REAL NOT NULL,
                    updated_at REAL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at REAL,
                    expires_at REAL,
                    tag TEXT NOT NULL,
                    fingerprint TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sync_queue_tag
                    ON sync_queue(tag);

                CREATE INDEX IF NOT EXISTS idx_sync_queue_fingerprint
                    ON sync_queue(fingerprint);
            """)
            connection.commit()
        finally:
            connection.close()
        self.__initialized = True
        logger.info('Durable store initialized: {}'.format(self.__path))

    # region Cache metadata

    def put_cache_meta(self, url: str, cached_at: float) -> None:
        # REPLACE deletes the old row, so a rewritten URL moves to the back of the insertion order.
        with self._connect() as connection:
            connection.execute('INSERT OR REPLACE INTO cache_meta (url, cached_at) VALUES (?, ?)', (url, cached_at))

    def get_cache_meta(self, url: str) -> Optional[float]:
        with self._connect() as connection:
            row = connection.execute('SELECT cached_at FROM cache_meta WHERE url = ?', (url,)).fetchone()
        return row[0] if row else None

    def delete_cache_meta(self, url: str) -> None:
        with self._connect() as connection:
            connection.execute('DELETE FROM cache_meta WHERE url = ?', (url,))

    def cache_meta_urls(self) -> List[str]:
        """
        All URLs with metadata, oldest-inserted first.
        """
        with self._connect() as connection:
            rows = connection.execute('SELECT url FROM cache_meta ORDER BY seq ASC').fetchall()
        return [row[0] for row in rows]

    # endregion

    # region Mutation queue

    def insert_item(self, item: QueueItem) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                'INSERT INTO sync_queue (url, method, headers, body, credentials, created_at, updated_at, '
                'attempts, next_attempt_at, expires_at, tag, fingerprint) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
                (item.url, item.method, json.dumps(dict(item.headers)), item.body, item.credentials,
                 item.created_at, item.updated_at, item.attempts, item.next_attempt_at, item.expires_at,
                 item.tag, item.fingerprint),
            )
            return cursor.lastrowid

    def update_item(self, item: QueueItem) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                'UPDATE sync_queue SET headers = ?, body = ?, updated_at = ?, attempts = ?, '
                'next_attempt_at = ?, expires_at = ? WHERE id = ?',
                (json.dumps(dict(item.headers)), item.body, item.updated_at, item.attempts,
                 item.next_attempt_at, item.expires_at, item.id),
            )
            return cursor.rowcount > 0

    def delete_item(self, item_id: int) -> bool:
        with self._connect() as connection:
            cursor = connection.execute('DELETE FROM sync_queue WHERE id = ?', (item_id,))
            return cursor.rowcount > 0

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        with self._connect() as connection:
            row = connection.execute(
                'SELECT {} FROM sync_queue WHERE id = ?'.format(', '.join(_QUEUE_COLUMNS)), (item_id,)
            ).fetchone()
        return self._to_item(row) if row else None

    def items(self, tag: Optional[str] = None) -> List[QueueItem]:
        query = 'SELECT {} FROM sync_queue'.format(', '.join(_QUEUE_COLUMNS))
        with self._connect() as connection:
            if tag is None:
                rows = connection.execute(query + ' ORDER BY id ASC').fetchall()
            else:
                rows = connection.execute(query + ' WHERE tag = ? ORDER BY id ASC', (tag,)).fetchall()
        return [self._to_item(row) for row in rows]

    def items_by_fingerprint(self, fingerprint: str, tag: str) -> List[QueueItem]:
        with self._connect() as connection:
            rows = connection.execute(
                'SELECT {} FROM sync_queue WHERE fingerprint = ? AND tag = ? ORDER BY id ASC'.format(
                    ', '.join(_QUEUE_COLUMNS)),
                (fingerprint, tag),
            ).fetchall()
        return [self._to_item(row) for row in rows]

    def count_items(self) -> int:
        with self._connect() as connection:
            return connection.execute('SELECT COUNT(*) FROM sync_queue').fetchone()[0]

    def delete_expired_items(self, now: float) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                'DELETE FROM sync_queue WHERE expires_at IS NOT NULL AND expires_at < ?', (now,))
            return cursor.rowcount

    @staticmethod
    def _to_item(row) -> QueueItem:
        values = dict(zip(_QUEUE_COLUMNS, row))
        try:
            headers = json.loads(values['headers'] or '{}')
        except json.JSONDecodeError:
            logger.warning('Queued request {} has unreadable headers. Replaying without them.'.format(values['id']))
            headers = {}
        values['headers'] = headers if isinstance(headers, dict) else {}
        return QueueItem(**values)

    # endregion
