# testing_fakes.py
"""
单元测试共用的假实现 (内存配置、内存提交存储、可编排的远端)
"""
import threading
import time
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional

from commit_store import CommitStore
from config_manager import ConfigStore
from data_sources.base import RemoteSource
from exceptions import NetworkError
from models import CommitRecord, Connection, Identity, Project, RemoteCommit


class InMemoryConfigStore(ConfigStore):
    def __init__(self, connections: Optional[List[Connection]] = None):
        self.connections = list(connections or [])
        self.selected_ids: List[str] = []
        self.save_count = 0

    def load_connections(self) -> List[Connection]:
        return [Connection.from_dict(c.to_dict()) for c in self.connections]

    def save_connections(self, connections: List[Connection]):
        self.connections = [Connection.from_dict(c.to_dict()) for c in connections]
        self.save_count += 1

    def get_selected_project_ids(self) -> List[str]:
        return list(self.selected_ids)

    def set_selected_project_ids(self, project_ids: List[str]):
        self.selected_ids = list(project_ids)


class InMemoryCommitStore(CommitStore):
    def __init__(self, commits: Optional[List[CommitRecord]] = None):
        self.commits = list(commits or [])

    def get_all_commits(self) -> List[CommitRecord]:
        return list(self.commits)

    def save_commits(self, commits: List[CommitRecord]) -> int:
        known = {c.key for c in self.commits}
        new_commits = [c for c in commits if c.key not in known]
        self.commits.extend(new_commits)
        return len(new_commits)


class FakeRemote(RemoteSource):
    """
    按 project_id 返回预置的提交；project_id 在 failing 中时抛出 NetworkError。
    delays 可让某些项目的任务更晚完成，用于验证合并顺序与完成顺序无关。
    """

    def __init__(self):
        self.identities: Dict[str, Identity] = {}
        self.projects: Dict[str, List[Project]] = {}
        self.commits: Dict[str, List[RemoteCommit]] = {}
        self.details: Dict[str, RemoteCommit] = {}
        self.failing: set = set()
        self.delays: Dict[str, float] = {}
        self.calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _record(self, name: str):
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1

    def validate_identity(self, server_url: str, token: str) -> Optional[Identity]:
        self._record("validate_identity")
        return self.identities.get(token)

    def get_current_user(self, connection: Connection) -> Optional[Identity]:
        self._record("get_current_user")
        if connection.id in self.failing:
            raise NetworkError(connection.server_url, 3)
        return self.identities.get(connection.access_token)

    def list_projects(self, connection: Connection) -> List[Project]:
        self._record("list_projects")
        if connection.id in self.failing:
            raise NetworkError(connection.server_url, 3)
        return [
            replace(p, connection_name=connection.name)
            for p in self.projects.get(connection.id, [])
        ]

    def fetch_project(self, connection: Connection, project_id: str) -> Optional[Project]:
        for project in self.projects.get(connection.id, []):
            if project.id == project_id:
                return project
        return None

    def list_commits(
        self, connection: Connection, project_id: str, since: date, until: date
    ) -> List[RemoteCommit]:
        self._record("list_commits")
        if project_id in self.delays:
            time.sleep(self.delays[project_id])
        if project_id in self.failing:
            raise NetworkError(f"/projects/{project_id}/repository/commits", 3)
        return list(self.commits.get(project_id, []))

    def fetch_commit_detail(
        self, connection: Connection, project_id: str, sha: str
    ) -> Optional[RemoteCommit]:
        self._record("fetch_commit_detail")
        if sha in self.failing:
            raise NetworkError(f"/repository/commits/{sha}", 3)
        return self.details.get(sha)

    def fetch_commit_diff(
        self, connection: Connection, project_id: str, sha: str
    ) -> Optional[str]:
        self._record("fetch_commit_diff")
        return f"diff --git a/{sha}"


def make_connection(connection_id: str, **overrides) -> Connection:
    values = {
        "id": connection_id,
        "name": f"GitLab {connection_id}",
        "server_url": f"https://{connection_id}.example.com",
        "access_token": f"token-{connection_id}",
    }
    values.update(overrides)
    return Connection(**values)


def make_remote_commit(
    sha: str,
    created_at: str,
    author: str = "alice",
    email: str = "alice@x.com",
    message: str = "feat: something",
    parents: int = 1,
) -> RemoteCommit:
    return RemoteCommit(
        id=sha * 5,
        short_id=sha,
        message=message,
        author_name=author,
        author_email=email,
        created_at=created_at,
        parent_ids=[f"p{i}" for i in range(parents)],
    )
