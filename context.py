# context.py
"""
[V1.0] 会话上下文
每个会话构建一次，显式传递给注册表、项目服务和聚合服务，不使用全局单例。
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from cache.commit_cache import CommitCache
from cache.project_cache import DiskProjectCache
from commit_store import CommitStore, JsonlCommitStore
from config import GlobalConfig
from config_manager import ConfigStore, JsonConfigStore, build_default_connection
from data_sources.base import RemoteSource
from data_sources.gitlab_api import GitLabApiClient
from data_sources.mapper import GitLabModelMapper
from instance_registry import InstanceRegistry
from project_service import ProjectService

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """
    封装一次会话所需的全部协作者。
    CLI 通过 SessionContext.create() 组装，测试可以直接传入假实现。
    """

    global_config: GlobalConfig
    config_store: ConfigStore
    remote: RemoteSource
    mapper: GitLabModelMapper
    registry: InstanceRegistry
    project_cache: DiskProjectCache
    commit_cache: CommitCache
    project_service: ProjectService
    commit_store: CommitStore
    executor: ThreadPoolExecutor

    @classmethod
    def create(
        cls,
        global_config: Optional[GlobalConfig] = None,
        config_store: Optional[ConfigStore] = None,
        remote: Optional[RemoteSource] = None,
        commit_store: Optional[CommitStore] = None,
        project_cache: Optional[DiskProjectCache] = None,
        commit_cache: Optional[CommitCache] = None,
    ) -> "SessionContext":
        global_config = global_config or GlobalConfig()
        mapper = GitLabModelMapper()
        config_store = config_store or JsonConfigStore.from_global_config(global_config)
        remote = remote or GitLabApiClient(global_config, mapper=mapper)

        executor = ThreadPoolExecutor(
            max_workers=global_config.MAX_WORKERS, thread_name_prefix="aggregator"
        )
        registry = InstanceRegistry(config_store, remote)

        # 首次运行: 用 .env 中的默认连接初始化
        if not registry.get_connections():
            default_connection = build_default_connection(global_config)
            if default_connection is not None:
                logger.info(f"ℹ️ 从 .env 初始化默认连接: {default_connection.server_url}")
                registry.add_connection(default_connection)

        project_cache = project_cache or DiskProjectCache(
            global_config.project_cache_path(),
            ttl=timedelta(hours=global_config.PROJECT_CACHE_TTL_HOURS),
        )
        commit_cache = commit_cache or CommitCache(global_config.COMMIT_CACHE_TTL_SECONDS)
        project_service = ProjectService(
            registry, remote, project_cache, config_store, executor
        )

        return cls(
            global_config=global_config,
            config_store=config_store,
            remote=remote,
            mapper=mapper,
            registry=registry,
            project_cache=project_cache,
            commit_cache=commit_cache,
            project_service=project_service,
            commit_store=commit_store or JsonlCommitStore.from_global_config(global_config),
            executor=executor,
        )

    def close(self):
        self.executor.shutdown(wait=True)
        self.registry.close()
