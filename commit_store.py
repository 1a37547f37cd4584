# commit_store.py
"""
[V1.0] 提交历史存储
- CommitStore: 聚合服务只依赖这个接口读取历史提交 (离线查询)
- JsonlCommitStore: 每行一个 JSON 对象，追加写入，按 (连接, 项目, hash) 去重
"""
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import List

from config import GlobalConfig
from models import CommitRecord

logger = logging.getLogger(__name__)


class CommitStore(ABC):
    @abstractmethod
    def get_all_commits(self) -> List[CommitRecord]:
        pass

    @abstractmethod
    def save_commits(self, commits: List[CommitRecord]) -> int:
        """保存提交，返回新写入的条数"""
        pass


class JsonlCommitStore(CommitStore):
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def from_global_config(cls, global_config: GlobalConfig) -> "JsonlCommitStore":
        return cls(
            os.path.join(global_config.data_root_path(), global_config.COMMIT_STORE_FILE)
        )

    def get_all_commits(self) -> List[CommitRecord]:
        with self._lock:
            return self._read_all()

    def save_commits(self, commits: List[CommitRecord]) -> int:
        with self._lock:
            known_keys = {c.key for c in self._read_all()}
            new_commits = []
            for commit in commits:
                if commit.key in known_keys:
                    continue
                known_keys.add(commit.key)
                new_commits.append(commit)

            if not new_commits:
                return 0

            try:
                os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    for commit in new_commits:
                        f.write(json.dumps(commit.to_dict(), ensure_ascii=False) + "\n")
            except Exception as e:
                logger.error(f"❌ [CommitStore] 写入提交记录失败 ({self.path}): {e}")
                return 0

        logger.info(f"✅ [CommitStore] 新增 {len(new_commits)} 条提交记录")
        return len(new_commits)

    def _read_all(self) -> List[CommitRecord]:
        if not os.path.exists(self.path):
            return []

        commits = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        commits.append(CommitRecord.from_dict(json.loads(line)))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"⚠️ [CommitStore] 跳过第 {line_no} 行损坏的记录: {e}")
        except OSError as e:
            logger.error(f"❌ [CommitStore] 读取提交记录失败 ({self.path}): {e}")
        return commits
