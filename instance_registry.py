# instance_registry.py
"""
[V1.0] 连接注册表
- 维护进程内的连接列表 (以 ConfigStore 为持久化后端)
- 保证至多一个连接处于激活状态
- [V1.1] initialize(): 后台补全缺失的身份信息，不阻塞调用方
"""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import List, Optional

from config_manager import ConfigStore
from data_sources.base import RemoteSource
from exceptions import ConfigurationError
from models import Connection, Identity

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """
    写操作在 _write_lock 下构造一个新列表再整体替换 (copy-on-write)，
    读操作直接拿当前列表的引用并返回副本，因此不会看到写了一半的列表。
    """

    def __init__(
        self,
        config_store: ConfigStore,
        remote: RemoteSource,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.config_store = config_store
        self.remote = remote
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="identity"
        )
        self._owns_executor = executor is None
        self._write_lock = threading.Lock()
        self._connections: List[Connection] = []
        self._init_future: Optional[Future] = None
        self._load_from_config()

    # ==================== 读取 ====================

    def get_connections(self) -> List[Connection]:
        return [replace(c) for c in self._connections]

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        for c in self._connections:
            if c.id == connection_id:
                return replace(c)
        return None

    def get_active_connection(self) -> Optional[Connection]:
        for c in self._connections:
            if c.is_active:
                return replace(c)
        return None

    # ==================== 修改 ====================

    def set_active_connection(self, connection_id: str) -> bool:
        with self._write_lock:
            if not any(c.id == connection_id for c in self._connections):
                logger.warning(f"⚠️ [Registry] 连接不存在: {connection_id}")
                return False
            self._commit(
                [replace(c, is_active=(c.id == connection_id)) for c in self._connections]
            )
        logger.info(f"✅ [Registry] 已切换激活连接: {connection_id}")
        return True

    def add_connection(self, connection: Connection) -> bool:
        """
        添加连接。无效配置或 ID 重复时返回 False。
        第一个加入的连接自动成为激活连接。
        """
        if not connection.id:
            connection.id = str(uuid.uuid4())
        if not connection.is_valid():
            logger.error(f"❌ [Registry] 连接配置不完整: {connection.name or connection.id}")
            return False

        with self._write_lock:
            if any(c.id == connection.id for c in self._connections):
                logger.error(f"❌ [Registry] 连接 ID 重复: {connection.id}")
                return False
            connection.is_active = not self._connections
            self._commit(self._connections + [replace(connection)])

        logger.info(f"✅ [Registry] 已添加连接: {connection.name} ({connection.id})")
        return True

    def add_connection_and_resolve_identity(self, connection: Connection) -> Future:
        """添加连接后在后台解析身份，返回可等待的 Future"""
        if not self.add_connection(connection):
            raise ConfigurationError(f"无法添加连接: {connection.name or connection.id}")
        return self._executor.submit(self.fetch_and_update_identity, connection.id)

    def update_connection(self, connection: Connection) -> bool:
        """
        按 ID 替换连接配置。激活状态只能通过 set_active_connection 修改，这里保留原值。
        """
        with self._write_lock:
            updated = []
            found = False
            for c in self._connections:
                if c.id == connection.id:
                    updated.append(replace(connection, is_active=c.is_active))
                    found = True
                else:
                    updated.append(c)
            if not found:
                return False
            self._commit(updated)
        return True

    def remove_connection(self, connection_id: str) -> bool:
        with self._write_lock:
            remaining = [replace(c) for c in self._connections if c.id != connection_id]
            if len(remaining) == len(self._connections):
                return False
            if remaining and not any(c.is_active for c in remaining):
                remaining[0].is_active = True
            self._commit(remaining)
        logger.info(f"🧹 [Registry] 已移除连接: {connection_id}")
        return True

    def reload(self):
        """丢弃内存状态，重新从配置加载"""
        self._load_from_config()

    # ==================== 身份解析 ====================

    def test_connection(self, connection: Connection) -> bool:
        """
        测试连接并记录当前用户信息。
        传入的 connection 对象会被就地更新；若已注册，同时持久化。
        """
        identity = self.remote.get_current_user(connection)
        if identity is None:
            logger.error(f"❌ [Registry] 连接测试失败: {connection.name}")
            return False

        connection.apply_identity(identity)
        self._store_identity(connection.id, identity)
        logger.info(
            f"✅ [Registry] 连接测试成功: {connection.name}, 用户: {identity.username} ({identity.name})"
        )
        return True

    def fetch_and_update_identity(self, connection_id: str) -> Optional[Identity]:
        connection = self.get_connection(connection_id)
        if connection is None:
            return None

        identity = self.remote.get_current_user(connection)
        if identity is not None:
            self._store_identity(connection_id, identity)
            logger.info(
                f"✅ [Registry] 已更新 {connection.name} 的用户信息: {identity.username}"
            )
        return identity

    def initialize(self) -> Future:
        """
        幂等。为缺少用户名或邮箱的有效连接在后台解析身份，
        返回的 Future 在全部解析尝试结束后完成 (单个失败不会让 Future 失败)。
        """
        with self._write_lock:
            if self._init_future is not None:
                return self._init_future

            pending = [
                c.id
                for c in self._connections
                if c.is_valid() and not c.has_complete_identity()
            ]
            if pending:
                logger.info(f"🔄 [Registry] {len(pending)} 个连接缺少用户信息，后台获取中...")
            self._init_future = self._executor.submit(self._resolve_identities, pending)
            return self._init_future

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ==================== 内部方法 ====================

    def _resolve_identities(self, connection_ids: List[str]) -> int:
        resolved = 0
        for connection_id in connection_ids:
            try:
                if self.fetch_and_update_identity(connection_id) is not None:
                    resolved += 1
            except Exception as e:
                logger.warning(f"⚠️ [Registry] 获取连接 {connection_id} 的用户信息失败: {e}")
        return resolved

    def _store_identity(self, connection_id: str, identity: Identity):
        with self._write_lock:
            updated = []
            for c in self._connections:
                if c.id == connection_id:
                    c = replace(c)
                    c.apply_identity(identity)
                updated.append(c)
            self._commit(updated)

    def _load_from_config(self):
        connections = self.config_store.load_connections()

        # 保证至多一个、且在非空时恰好一个激活连接
        seen_active = False
        for c in connections:
            if c.is_active and not seen_active:
                seen_active = True
            else:
                c.is_active = False
        if connections and not seen_active:
            connections[0].is_active = True

        with self._write_lock:
            self._connections = connections
        logger.info(f"ℹ️ [Registry] 已加载 {len(connections)} 个连接")

    def _commit(self, connections: List[Connection]):
        """调用方需持有 _write_lock"""
        self._connections = connections
        self.config_store.save_connections(connections)
