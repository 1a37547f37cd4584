# cache/commit_cache.py
"""
[V1.0] 提交列表的内存缓存 (短 TTL)
与磁盘项目缓存刻意分开：两者的持久性和过期时间相差两个数量级。
"""
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from models import CacheEntry, CommitRecord

logger = logging.getLogger(__name__)


class CommitCache:
    """
    键为 (connection_id, project_id)，值为带创建时间的提交列表。
    锁只保护字典操作本身，从不跨越网络请求持有。
    """

    def __init__(self, ttl_seconds: float = 60 * 60, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], CacheEntry[List[CommitRecord]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(connection_id: str, project_id: str) -> Tuple[str, str]:
        return (connection_id, project_id)

    def get(self, connection_id: str, project_id: str) -> Optional[List[CommitRecord]]:
        """命中且未过期时返回提交列表的副本，否则返回 None (过期条目会被移除)"""
        key = self.make_key(connection_id, project_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return list(entry.payload)

    def put(self, connection_id: str, project_id: str, commits: List[CommitRecord]):
        key = self.make_key(connection_id, project_id)
        entry = CacheEntry(payload=list(commits), created_at=self._clock(), ttl=self.ttl_seconds)
        with self._lock:
            self._entries[key] = entry

    def invalidate_connection(self, connection_id: str) -> int:
        with self._lock:
            stale_keys = [k for k in self._entries if k[0] == connection_id]
            for key in stale_keys:
                del self._entries[key]
        logger.info(f"🧹 [CommitCache] 已清除连接 {connection_id} 的 {len(stale_keys)} 条提交缓存")
        return len(stale_keys)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
