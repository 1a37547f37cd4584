# cache/project_cache.py
"""
[V1.0] 项目列表的磁盘缓存
每个连接一个 JSON 文件，避免进程重启后重复请求项目列表。
"""
import json
import logging
import os
import glob
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from models import Project
from utils import sanitize_filename

logger = logging.getLogger(__name__)


class DiskProjectCache:
    """
    文件格式: {"cached_at": "<ISO 时间>", "projects": [...]}
    文件不存在、无法读取或超过 ttl 都视为未命中，返回空列表，
    由调用方从 API 重新拉取并回写。
    """

    def __init__(
        self,
        cache_dir: str,
        ttl: timedelta = timedelta(hours=24),
        now: Callable[[], datetime] = datetime.now,
    ):
        self.cache_dir = cache_dir
        self.ttl = ttl
        self._now = now

    def cache_file_path(self, connection_id: str) -> str:
        return os.path.join(self.cache_dir, sanitize_filename(connection_id) + ".json")

    def get_projects(self, connection_id: str) -> List[Project]:
        cache_file = self.cache_file_path(connection_id)
        if not os.path.exists(cache_file):
            logger.info(f"ℹ️ [ProjectCache] 连接 {connection_id} 没有缓存文件")
            return []

        try:
            with open(cache_file, "r", encoding="utf-8") as f:
                content = json.load(f)

            cached_at = self._parse_cached_at(content.get("cached_at"))
            if cached_at is None or self._now() - cached_at > self.ttl:
                logger.info(f"ℹ️ [ProjectCache] 连接 {connection_id} 的缓存已过期")
                return []

            projects = [Project.from_dict(item) for item in content.get("projects", [])]
            logger.info(
                f"✅ [ProjectCache] 从缓存加载 {len(projects)} 个项目 (连接: {connection_id})"
            )
            return projects
        except Exception as e:
            logger.error(f"❌ [ProjectCache] 读取缓存文件失败 ({cache_file}): {e}")
            return []

    def save_projects(self, connection_id: str, projects: List[Project]):
        cache_file = self.cache_file_path(connection_id)
        payload = {
            "cached_at": self._now().isoformat(),
            "projects": [p.to_dict() for p in projects],
        }
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            with open(cache_file, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            logger.info(f"✅ [ProjectCache] 已缓存 {len(projects)} 个项目 (连接: {connection_id})")
        except Exception as e:
            logger.error(f"❌ [ProjectCache] 写入缓存文件失败 ({cache_file}): {e}")

    def clear(self, connection_id: str):
        cache_file = self.cache_file_path(connection_id)
        try:
            if os.path.exists(cache_file):
                os.remove(cache_file)
                logger.info(f"🧹 [ProjectCache] 已清除连接 {connection_id} 的缓存")
        except Exception as e:
            logger.error(f"❌ [ProjectCache] 清除缓存失败 ({cache_file}): {e}")

    def clear_all(self):
        for cache_file in glob.glob(os.path.join(self.cache_dir, "*.json")):
            try:
                os.remove(cache_file)
            except Exception as e:
                logger.error(f"❌ [ProjectCache] 删除缓存文件失败 ({cache_file}): {e}")
        logger.info("🧹 [ProjectCache] 已清除全部项目缓存")

    @staticmethod
    def _parse_cached_at(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
