# config_manager.py
"""
[V1.0] 配置管理器
- 负责连接列表与已选项目 ID 的持久化 (data/connections.json)
- 令牌的加密存储由外部协作者负责，这里按原样读写
"""

import os
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from config import GlobalConfig
from models import Connection

logger = logging.getLogger(__name__)


def load_json_file(path: str, default: Any) -> Any:
    """读取 JSON 文件，文件不存在或损坏时返回 default"""
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except Exception as e:
        logger.error(f"❌ 加载配置文件 {path} 失败: {e}")
        return default


def save_json_file(path: str, data: Any):
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=4, ensure_ascii=False)
    except Exception as e:
        logger.error(f"❌ 保存配置文件 {path} 失败: {e}")


class ConfigStore(ABC):
    """
    持久化配置的抽象接口。
    InstanceRegistry 和 ProjectService 只通过它读写配置。
    """

    @abstractmethod
    def load_connections(self) -> List[Connection]:
        pass

    @abstractmethod
    def save_connections(self, connections: List[Connection]):
        pass

    @abstractmethod
    def get_selected_project_ids(self) -> List[str]:
        """返回已选项目的 "connection_id:project_id" 键"""
        pass

    @abstractmethod
    def set_selected_project_ids(self, project_ids: List[str]):
        pass


class JsonConfigStore(ConfigStore):
    """基于单个 JSON 文件的配置存储"""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def from_global_config(cls, global_config: GlobalConfig) -> "JsonConfigStore":
        return cls(
            os.path.join(global_config.data_root_path(), global_config.CONNECTIONS_FILE)
        )

    def _read(self) -> Dict[str, Any]:
        data = load_json_file(self.path, {})
        return data if isinstance(data, dict) else {}

    def load_connections(self) -> List[Connection]:
        with self._lock:
            raw = self._read().get("connections", [])
        connections = []
        for item in raw:
            try:
                connections.append(Connection.from_dict(item))
            except (TypeError, AttributeError) as e:
                logger.warning(f"⚠️ 跳过无法识别的连接配置: {e}")
        return connections

    def save_connections(self, connections: List[Connection]):
        with self._lock:
            data = self._read()
            data["connections"] = [c.to_dict() for c in connections]
            save_json_file(self.path, data)

    def get_selected_project_ids(self) -> List[str]:
        with self._lock:
            ids = self._read().get("selected_project_ids", [])
        return [str(i) for i in ids]

    def set_selected_project_ids(self, project_ids: List[str]):
        """project_ids 为 "connection_id:project_id" 形式的选中键"""
        with self._lock:
            data = self._read()
            data["selected_project_ids"] = list(project_ids)
            save_json_file(self.path, data)
        logger.info(f"✅ 已保存 {len(project_ids)} 个已选项目")


def build_default_connection(global_config: GlobalConfig) -> Optional[Connection]:
    """
    根据 .env 中的 GITLAB_URL / GITLAB_TOKEN 构造默认连接 (未配置时返回 None)
    """
    if not global_config.has_default_connection():
        return None
    return Connection(
        id="default",
        name=global_config.GITLAB_NAME,
        server_url=global_config.GITLAB_URL,
        access_token=global_config.GITLAB_TOKEN,
    )
