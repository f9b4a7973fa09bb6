"""Consistent hash ring mapping routing keys to node ids.

Points are laid out ketama style: every node contributes VNODES md5 digests,
each split into four 32-bit points on the circle.
"""
import bisect
import hashlib
import logging
import threading
from collections.abc import Hashable, Iterable

logger = logging.getLogger(__name__)

__all__ = ['HashRing', 'key_to_point']

VNODES = 40


def key_to_point(key: Hashable) -> int:
    """Hash a routing key to a position on the ring.
    """
    digest = hashlib.md5(str(key).encode()).digest()
    return int.from_bytes(digest[:4], 'little')


def _node_points(node_id: str) -> list[int]:
    points = []
    for replica in range(VNODES):
        digest = hashlib.md5(f'{node_id}-{replica}'.encode()).digest()
        for i in range(4):
            points.append(int.from_bytes(digest[i * 4:(i + 1) * 4], 'little'))
    return points


class HashRing:
    """Thread-safe consistent hash ring.

    get() is stable for a fixed node set; add() and remove() only move the
    keys that fall between the affected points and their predecessors.
    """

    def __init__(self, node_ids: Iterable[str] = ()):
        self._lock = threading.RLock()
        self._nodes = set()
        self._points = []
        self._owners = {}
        for node_id in node_ids:
            self._insert(node_id)
        self._rebuild()

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id) -> bool:
        return node_id in self._nodes

    def __repr__(self) -> str:
        return f'HashRing(nodes={sorted(self._nodes)})'

    @property
    def nodes(self) -> set[str]:
        with self._lock:
            return set(self._nodes)

    def _insert(self, node_id: str) -> None:
        self._nodes.add(node_id)
        for point in _node_points(node_id):
            # on a collision the lexicographically smaller id keeps the point
            owner = self._owners.get(point)
            if owner is None or node_id < owner:
                self._owners[point] = node_id

    def _rebuild(self) -> None:
        self._points = sorted(self._owners)

    def get(self, key: Hashable) -> str | None:
        """Return the node id responsible for key, None on an empty ring.
        """
        point = key_to_point(key)
        with self._lock:
            if not self._points:
                return None
            index = bisect.bisect_left(self._points, point)
            if index == len(self._points):
                index = 0
            return self._owners[self._points[index]]

    def add(self, node_id: str) -> None:
        with self._lock:
            if node_id in self._nodes:
                return
            self._insert(node_id)
            self._rebuild()
        logger.debug(f'Ring added {node_id} ({len(self._nodes)} nodes)')

    def remove(self, node_id: str) -> None:
        with self._lock:
            if node_id not in self._nodes:
                return
            self._nodes.discard(node_id)
            self._owners.clear()
            for remaining in self._nodes:
                self._insert(remaining)
            self._rebuild()
        logger.debug(f'Ring removed {node_id} ({len(self._nodes)} nodes)')
