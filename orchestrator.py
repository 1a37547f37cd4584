# orchestrator.py
"""
[V1.0] 提交聚合编排器
- 每个项目一个任务，在线程池中并发拉取，全部完成后合并
- 单个项目失败只记录日志，不影响整批结果
- 合并结果按提交时间倒序 (稳定排序)
[V1.1] 新增：作者过滤、离线查询 (CommitStore)、提交详情补全
"""
import logging
import threading
from concurrent.futures import Future
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional

from context import SessionContext
from models import CommitRecord, Connection, Project
from utils import day_bounds

logger = logging.getLogger(__name__)


class CommitAggregator:
    """
    负责在多个连接、多个项目之间聚合提交记录。
    自身从不重试：传输层重试由 API 客户端负责。
    """

    def __init__(self, context: SessionContext):
        self.context = context
        self.registry = context.registry
        self.project_service = context.project_service
        self.remote = context.remote
        self.mapper = context.mapper
        self.commit_cache = context.commit_cache
        self.commit_store = context.commit_store
        self._executor = context.executor

        self._init_lock = threading.Lock()
        self._init_future: Optional[Future] = None

    # ==================== 初始化 ====================

    def initialize(self) -> Future:
        """
        幂等。在后台补全连接的身份信息并加载项目，
        返回的 Future 在两者都结束后完成。
        """
        with self._init_lock:
            if self._init_future is not None:
                return self._init_future
            self._init_future = Future()
            init_future = self._init_future

        pending = [
            self.registry.initialize(),
            self.project_service.ensure_projects_loaded(),
        ]
        remaining = [len(pending)]
        counter_lock = threading.Lock()

        def on_done(future: Future):
            if future.exception() is not None:
                logger.warning(f"⚠️ 初始化步骤失败: {future.exception()}")
            with counter_lock:
                remaining[0] -= 1
                finished = remaining[0] == 0
            if finished:
                logger.info("✅ CommitAggregator 初始化完成")
                init_future.set_result(None)

        for future in pending:
            future.add_done_callback(on_done)
        return init_future

    # ==================== 在线聚合 ====================

    def get_commits_for_week(
        self,
        week_start: date,
        week_end: date,
        selected_projects: Optional[List[Project]] = None,
    ) -> List[CommitRecord]:
        """
        拉取所选项目在 [week_start, week_end] 内的全部提交 (不做作者过滤)。
        selected_projects 为 None 时使用 ProjectService 中已选的项目。
        """
        if selected_projects is None:
            selected_projects = self.project_service.get_selected_projects()
        if not selected_projects:
            logger.warning("⚠️ 没有选择任何项目")
            return []

        logger.info(
            f"🔄 正在从 {len(selected_projects)} 个项目获取 {week_start} ~ {week_end} 的提交..."
        )
        tasks = [
            (project, self._executor.submit(self.get_commits_for_project, project, week_start, week_end))
            for project in selected_projects
        ]

        all_commits: List[CommitRecord] = []
        failed = 0
        for project, task in tasks:
            try:
                all_commits.extend(task.result())
            except Exception as e:
                failed += 1
                logger.error(f"❌ 获取项目 {project.display_name} 的提交失败: {e}")

        # reverse=True 仍是稳定排序，时间相同的提交保持提交任务的顺序
        all_commits.sort(key=lambda c: c.timestamp, reverse=True)

        if failed:
            logger.warning(f"⚠️ {failed}/{len(tasks)} 个项目获取失败，已跳过")
        logger.info(f"✅ 共获取 {len(all_commits)} 条提交")
        return all_commits

    def get_commits_for_project(
        self, project: Project, since: date, until: date
    ) -> List[CommitRecord]:
        """
        命中内存缓存时按日期过滤后返回；未命中时请求 API、映射并写入缓存。
        缓存键不含日期范围，写入的是本次 API 返回的完整结果。
        """
        connection = self.registry.get_connection(project.connection_id)
        if connection is None:
            logger.warning(f"⚠️ 项目 {project.display_name} 所属的连接不存在: {project.connection_id}")
            return []

        cached = self.commit_cache.get(connection.id, project.id)
        if cached is not None:
            start, end = day_bounds(since, until)
            in_range = [c for c in cached if start <= c.timestamp <= end]
            logger.info(f"ℹ️ [缓存命中] {project.display_name}: {len(in_range)} 条提交")
            return in_range

        logger.info(f"🌐 正在从 API 获取 {project.display_name} 的提交...")
        remote_commits = self.remote.list_commits(connection, project.id, since, until)
        commits = self.mapper.to_commit_records(remote_commits, project, connection)
        self.commit_cache.put(connection.id, project.id, commits)
        return commits

    def get_my_commits_for_week(
        self,
        week_start: date,
        week_end: date,
        selected_projects: Optional[List[Project]] = None,
    ) -> List[CommitRecord]:
        """只保留当前用户的非合并提交"""
        all_commits = self.get_commits_for_week(week_start, week_end, selected_projects)
        connections = self._connections_by_id()
        my_commits = [
            c for c in all_commits
            if not c.is_merge and is_commit_by_current_user(c, connections)
        ]
        logger.info(f"✅ 当前用户的提交: {len(my_commits)}/{len(all_commits)}")
        return my_commits

    def get_commits_with_details(
        self, project: Project, since: date, until: date
    ) -> List[CommitRecord]:
        """
        先获取提交列表，再并发请求每个提交的详情以补全增删行数。
        详情获取失败的提交保留基础信息。
        """
        commits = self.get_commits_for_project(project, since, until)
        connection = self.registry.get_connection(project.connection_id)
        if not commits or connection is None:
            return commits

        tasks = [
            self._executor.submit(self.remote.fetch_commit_detail, connection, project.id, c.hash)
            for c in commits
        ]

        detailed: List[CommitRecord] = []
        for commit, task in zip(commits, tasks):
            try:
                detail = task.result()
            except Exception as e:
                logger.warning(f"⚠️ 获取提交 {commit.hash} 的详情失败: {e}")
                detail = None

            if detail is not None and detail.insertions is not None:
                commit = replace(
                    commit,
                    insertions=detail.insertions or 0,
                    deletions=detail.deletions or 0,
                )
            detailed.append(commit)
        return detailed

    def fetch_commit_diff(self, project: Project, commit: CommitRecord) -> Optional[str]:
        connection = self.registry.get_connection(project.connection_id)
        if connection is None:
            logger.warning(f"⚠️ 项目 {project.display_name} 所属的连接不存在")
            return None
        return self.remote.fetch_commit_diff(connection, project.id, commit.hash)

    # ==================== 离线查询 ====================

    def get_my_commits_for_week_from_cache(
        self, week_start: date, week_end: date, projects: List[Project]
    ) -> List[CommitRecord]:
        """只读 CommitStore，不发起任何网络请求"""
        project_keys = {(p.connection_id, p.id) for p in projects}
        start, end = day_bounds(week_start, week_end)
        connections = self._connections_by_id()

        commits = [
            c for c in self.commit_store.get_all_commits()
            if (c.connection_id, c.project_id) in project_keys
            and start <= c.timestamp <= end
            and not c.is_merge
            and is_commit_by_current_user(c, connections)
        ]
        commits.sort(key=lambda c: c.timestamp, reverse=True)
        logger.info(f"✅ 从本地存储读取到 {len(commits)} 条提交")
        return commits

    def save_commits(self, commits: List[CommitRecord]) -> int:
        return self.commit_store.save_commits(commits)

    # ==================== 连接变更 ====================

    def apply_connection_update(self, connection: Connection) -> bool:
        """
        更新连接配置。连接改名时同步项目中的连接名，
        并清除该连接的提交缓存 (缓存中的 project_name 已过时)。
        """
        previous = self.registry.get_connection(connection.id)
        if previous is None or not self.registry.update_connection(connection):
            logger.warning(f"⚠️ 连接不存在: {connection.id}")
            return False

        if previous.name != connection.name:
            self.project_service.update_connection_name(connection.id, connection.name)
            self.clear_commit_cache_for_connection(connection.id)
        return True

    # ==================== 缓存管理 ====================

    def clear_commit_cache(self):
        self.commit_cache.clear()
        logger.info("🧹 已清除提交缓存")

    def clear_commit_cache_for_connection(self, connection_id: str) -> int:
        return self.commit_cache.invalidate_connection(connection_id)

    def clear_cache(self):
        """清除提交缓存和内存中的项目列表 (磁盘缓存保留)"""
        self.commit_cache.clear()
        self.project_service.clear_memory_cache()
        logger.info("🧹 已清除内存缓存")

    def refresh_cache(self) -> int:
        """清除提交缓存并强制从 API 刷新项目，返回成功刷新的连接数"""
        self.commit_cache.clear()
        return self.project_service.refresh_all_projects(force=True)

    def _connections_by_id(self) -> Dict[str, Connection]:
        return {c.id: c for c in self.registry.get_connections()}


def is_commit_by_current_user(commit: CommitRecord, connections: Dict[str, Connection]) -> bool:
    """
    用户名或邮箱任一匹配即视为本人提交。
    连接未知时排除；连接尚未解析出任何身份信息时放行。
    """
    connection = connections.get(commit.connection_id)
    if connection is None:
        return False
    if not connection.has_identity():
        return True

    username_match = bool(connection.user_name) and commit.author == connection.user_name
    email_match = bool(connection.user_email) and commit.author_email == connection.user_email
    return username_match or email_match
