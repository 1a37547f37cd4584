from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional

from models import Connection, Identity, Project, RemoteCommit


class RemoteSource(ABC):
    """
    [V1.0] 远端代码托管服务的抽象基类
    聚合服务只依赖这个接口，屏蔽了具体的 HTTP 细节，测试中可直接替换为假实现。

    约定：列表接口失败时返回空列表、单实体接口失败时返回 None，
    只有传输层重试耗尽的 NetworkError 会抛给调用方。
    """

    @abstractmethod
    def validate_identity(self, server_url: str, token: str) -> Optional[Identity]:
        """
        用服务器地址和令牌解析当前用户。
        任何非 2xx 响应都返回 None。
        """
        pass

    @abstractmethod
    def get_current_user(self, connection: Connection) -> Optional[Identity]:
        """针对一个已配置的连接解析当前用户"""
        pass

    @abstractmethod
    def list_projects(self, connection: Connection) -> List[Project]:
        """
        分页获取连接下所有可访问的项目。
        每个项目都会被标注所属连接的 id 和名称。
        """
        pass

    @abstractmethod
    def fetch_project(self, connection: Connection, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    def list_commits(
        self, connection: Connection, project_id: str, since: date, until: date
    ) -> List[RemoteCommit]:
        """
        分页获取 [since, until] 闭区间 (按天) 内的提交。
        """
        pass

    @abstractmethod
    def fetch_commit_detail(
        self, connection: Connection, project_id: str, sha: str
    ) -> Optional[RemoteCommit]:
        """获取单个提交详情 (包含列表接口缺失的增删行数)"""
        pass

    @abstractmethod
    def fetch_commit_diff(
        self, connection: Connection, project_id: str, sha: str
    ) -> Optional[str]:
        pass
