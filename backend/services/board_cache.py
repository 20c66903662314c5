"""Per-board status configuration cache with lazy TTL expiry."""

import logging
import threading
import time
from typing import Callable, Sequence

from services.models import BoardColumn, BoardStatusConfiguration

logger = logging.getLogger(__name__)

BACKLOG_COLUMN_NAME = "backlog"


def derive_status_configuration(board_id: int,
                                columns: Sequence[BoardColumn]) -> BoardStatusConfiguration:
    """Derive the to-do and done status sets from ordered board columns.

    The last column is the done column. The first column is the to-do column
    unless it is named "Backlog", in which case the second column is used.
    """
    if not columns:
        return BoardStatusConfiguration(board_id=board_id)

    done = frozenset(columns[-1].status_ids)

    if columns[0].name.strip().lower() == BACKLOG_COLUMN_NAME:
        if len(columns) > 1:
            to_do = frozenset(columns[1].status_ids)
        else:
            logger.warning(f"[BoardCache] Board {board_id} only has a Backlog column, no to-do statuses")
            to_do = frozenset()
    else:
        to_do = frozenset(columns[0].status_ids)

    mapped = frozenset(sid for column in columns for sid in column.status_ids)
    return BoardStatusConfiguration(
        board_id=board_id,
        to_do_status_ids=to_do,
        done_status_ids=done,
        column_status_ids=mapped,
    )


class BoardStatusCache:
    """Shared cache of board status configurations.

    Entries are keyed by Jira server and board id, since board ids are only
    unique within one server. A failed fetch is not cached and yields an empty configuration, so every
    issue on that board is treated as not done.
    """

    def __init__(self, ttl_seconds: float = 30 * 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.api_calls = 0

    def get_configuration(self, board_id: int, client) -> BoardStatusConfiguration:
        key = (client.server, board_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[1] < self.ttl_seconds:
                self.hits += 1
                logger.info(f"[BoardCache] Cache HIT for board {board_id} (age: {round(now - entry[1])}s)")
                return entry[0]
            self.misses += 1
            self.api_calls += 1

        logger.info(f"[BoardCache] Cache MISS for board {board_id} - fetching configuration")
        result = client.get_board_column_configuration(board_id)
        if not result.success:
            logger.warning(
                f"[BoardCache] Failed to get configuration for board {board_id}: {result.error}"
            )
            return BoardStatusConfiguration(board_id=board_id)

        configuration = derive_status_configuration(board_id, result.data)
        with self._lock:
            self._entries[key] = (configuration, now)
        logger.info(
            f"[BoardCache] Board {board_id}: {len(configuration.done_status_ids)} done statuses, "
            f"{len(configuration.to_do_status_ids)} to-do statuses"
        )
        return configuration

    def get_done_status_ids(self, board_id: int, client) -> frozenset:
        return self.get_configuration(board_id, client).done_status_ids

    def get_to_do_status_ids(self, board_id: int, client) -> frozenset:
        return self.get_configuration(board_id, client).to_do_status_ids

    def invalidate(self, board_id=None, server=None):
        """Drop one board's entries, or everything (including statistics).

        With a ``board_id`` and no ``server`` the board is dropped on every server.
        """
        with self._lock:
            if board_id is not None:
                for key in [k for k in self._entries if k[1] == board_id]:
                    if server is None or key[0] == server:
                        del self._entries[key]
                return
            cleared = len(self._entries)
            self._entries.clear()
            self.hits = self.misses = self.api_calls = 0
        logger.info(f"[BoardCache] Cache cleared - removed {cleared} entries")

    def stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "entriesCount": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "apiCalls": self.api_calls,
                "hitRate": self.hits / total if total else 0.0,
                "ttlSeconds": self.ttl_seconds,
            }
