# project_service.py
"""
[V1.0] 项目管理
- 内存项目表: connection_id -> [Project]
- 加载顺序: 内存 -> 磁盘缓存 (24h) -> API
- 已选项目以 "connection_id:project_id" 键通过 ConfigStore 持久化，刷新后自动恢复
- [V1.1] 选中状态只以配置为准，磁盘缓存中的 is_selected 不参与恢复
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Dict, List, Optional

from cache.project_cache import DiskProjectCache
from config_manager import ConfigStore
from data_sources.base import RemoteSource
from instance_registry import InstanceRegistry
from models import Project

logger = logging.getLogger(__name__)


class ProjectService:
    def __init__(
        self,
        registry: InstanceRegistry,
        remote: RemoteSource,
        disk_cache: DiskProjectCache,
        config_store: ConfigStore,
        executor: ThreadPoolExecutor,
    ):
        self.registry = registry
        self.remote = remote
        self.disk_cache = disk_cache
        self.config_store = config_store
        self._executor = executor

        self._projects: Dict[str, List[Project]] = {}
        self._lock = threading.Lock()
        self._load_future: Optional[Future] = None

    # ==================== 初始化 ====================

    def ensure_projects_loaded(self) -> Future:
        """
        幂等。优先从磁盘缓存加载；若所有连接都没有可用缓存，
        则在后台从 API 拉取。返回的 Future 在加载完成后完成。
        """
        with self._lock:
            if self._load_future is not None:
                return self._load_future
            self._load_future = Future()
            load_future = self._load_future

        connections = self.registry.get_connections()
        if not connections:
            logger.info("ℹ️ [Projects] 未配置任何连接，跳过自动加载")
            load_future.set_result(0)
            return load_future

        if self._has_projects() or self._load_all_from_disk():
            load_future.set_result(len(self.get_all_projects()))
            return load_future

        logger.info("🔄 [Projects] 没有可用的文件缓存，后台从 API 加载项目...")

        def background_refresh():
            try:
                self.refresh_all_projects()
                load_future.set_result(len(self.get_all_projects()))
            except Exception as e:
                logger.warning(f"⚠️ [Projects] 后台加载失败 (可手动刷新): {e}")
                load_future.set_exception(e)

        self._executor.submit(background_refresh)
        return load_future

    # ==================== 查询 ====================

    def get_all_projects(self) -> List[Project]:
        all_projects: List[Project] = []
        for connection in self.registry.get_connections():
            all_projects.extend(self.get_projects_for_connection(connection.id))
        return all_projects

    def get_projects_for_connection(self, connection_id: str) -> List[Project]:
        with self._lock:
            return [replace(p) for p in self._projects.get(connection_id, [])]

    def get_selected_projects(self) -> List[Project]:
        """
        返回参与聚合的项目。内存为空时先尝试磁盘缓存，
        全部未命中则同步从 API 加载。
        """
        if not self._has_projects() and self.registry.get_connections():
            logger.info("ℹ️ [Projects] 内存中没有项目，尝试从文件缓存或 API 加载...")
            if not self._load_all_from_disk():
                try:
                    self.refresh_all_projects()
                except Exception as e:
                    logger.error(f"❌ [Projects] 从 API 加载项目失败: {e}")

        selected = [p for p in self.get_all_projects() if p.is_selected]
        logger.info(f"ℹ️ [Projects] 已选项目: {len(selected)} 个")
        return selected

    def get_cached_selected_projects(self) -> List[Project]:
        """只读内存与文件缓存中的已选项目，不发起网络请求"""
        if not self._has_projects():
            self._load_all_from_disk()
        return [p for p in self.get_all_projects() if p.is_selected]

    # ==================== 修改 ====================

    def set_selected_projects(self, projects: List[Project]):
        wanted = {(p.connection_id, p.id) for p in projects}

        with self._lock:
            for connection_id, project_list in self._projects.items():
                self._projects[connection_id] = [
                    replace(p, is_selected=(connection_id, p.id) in wanted)
                    for p in project_list
                ]
            missing = {cid for cid, _ in wanted if cid not in self._projects}

        for connection_id in missing:
            logger.warning(f"⚠️ [Projects] 连接 {connection_id} 没有已加载的项目")

        selected_keys = [p.selection_key for p in self.get_all_projects() if p.is_selected]
        self.config_store.set_selected_project_ids(selected_keys)

    def refresh_all_projects(self, force: bool = False) -> int:
        """
        逐个刷新所有连接的项目，返回成功刷新的连接数。
        在调用线程内执行，后台调用时不会占满线程池。
        """
        refreshed = 0
        for connection in self.registry.get_connections():
            if self.refresh_projects_for_connection(connection.id, force):
                refreshed += 1
        return refreshed

    def refresh_projects_for_connection(self, connection_id: str, force: bool = False) -> bool:
        """
        刷新单个连接的项目。force=False 时先读磁盘缓存。
        网络失败只记录日志并返回 False。
        """
        connection = self.registry.get_connection(connection_id)
        if connection is None:
            logger.warning(f"⚠️ [Projects] 连接不存在: {connection_id}")
            return False

        if not force:
            cached = self.disk_cache.get_projects(connection_id)
            if cached:
                self._store(connection_id, cached)
                return True

        if not connection.is_valid():
            logger.warning(f"⚠️ [Projects] 连接配置不完整，跳过: {connection.name}")
            return False

        logger.info(f"🌐 [Projects] 正在从 API 获取项目: {connection.name}")
        try:
            projects = self.remote.list_projects(connection)
        except Exception as e:
            logger.error(f"❌ [Projects] 获取连接 {connection.name} 的项目失败: {e}")
            return False

        self._store(connection_id, projects)
        self.disk_cache.save_projects(connection_id, self.get_projects_for_connection(connection_id))
        return True

    def update_connection_name(self, connection_id: str, new_name: str):
        """连接改名后同步更新项目中的冗余名称，并回写磁盘缓存"""
        with self._lock:
            projects = self._projects.get(connection_id)
            if projects is None:
                return
            self._projects[connection_id] = [
                replace(p, connection_name=new_name) for p in projects
            ]
        updated = self.get_projects_for_connection(connection_id)
        self.disk_cache.save_projects(connection_id, updated)
        logger.info(f"✅ [Projects] 已将 {len(updated)} 个项目的连接名更新为 '{new_name}'")

    def clear_project_cache(self):
        """清空内存与磁盘中的全部项目缓存"""
        with self._lock:
            self._projects.clear()
            self._load_future = None
        self.disk_cache.clear_all()

    def clear_memory_cache(self):
        with self._lock:
            self._projects.clear()

    def clear_file_cache(self, connection_id: str):
        self.disk_cache.clear(connection_id)

    # ==================== 内部方法 ====================

    def _has_projects(self) -> bool:
        with self._lock:
            return bool(self._projects)

    def _load_all_from_disk(self) -> bool:
        loaded = False
        for connection in self.registry.get_connections():
            cached = self.disk_cache.get_projects(connection.id)
            if cached:
                self._store(connection.id, cached)
                loaded = True
        return loaded

    def _store(self, connection_id: str, projects: List[Project]):
        """
        写入内存表，同时根据配置恢复选中状态。
        选中状态只以配置为准，忽略磁盘缓存中的 is_selected。
        """
        selected_keys = set(self.config_store.get_selected_project_ids())
        restored = [
            replace(p, is_selected=p.selection_key in selected_keys) for p in projects
        ]
        with self._lock:
            self._projects[connection_id] = restored
        restored_count = sum(1 for p in restored if p.is_selected)
        logger.info(
            f"ℹ️ [Projects] 连接 {connection_id}: {len(restored)} 个项目，恢复选中 {restored_count} 个"
        )
