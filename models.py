# models.py
"""
[V1.0] 领域模型
- Connection / Project / CommitRecord: 内部模型
- RemoteCommit / Identity: 远端 API 返回的原始形态 (由 mapper 转换)
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

API_PATH_PREFIX = "/api/v4"


class CommitType(Enum):
    """提交类型。声明顺序即约定式前缀的匹配顺序。"""

    FEATURE = "feat"
    BUGFIX = "fix"
    REFACTOR = "refactor"
    DOCUMENTATION = "docs"
    TEST = "test"
    CHORE = "chore"
    STYLE = "style"
    PERF = "perf"
    OTHER = "other"

    @property
    def prefix(self) -> str:
        return self.value


@dataclass
class Identity:
    """GET /user 返回的当前用户信息"""

    username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Connection:
    """一个已配置的远端 GitLab 服务器 (URL + 令牌 + 已解析的身份)"""

    id: str
    name: str
    server_url: str
    access_token: str = ""
    is_active: bool = False

    # 身份信息: 通过 /user 接口解析后缓存
    user_name: Optional[str] = None
    user_display_name: Optional[str] = None
    user_email: Optional[str] = None

    def is_valid(self) -> bool:
        return bool(self.id and self.name and self.server_url and self.access_token)

    @property
    def normalized_url(self) -> str:
        return normalize_server_url(self.server_url)

    @property
    def api_base_url(self) -> str:
        return self.normalized_url + API_PATH_PREFIX

    def has_identity(self) -> bool:
        """用户名或邮箱任一已知即可用于作者过滤"""
        return bool(self.user_name or self.user_email)

    def has_complete_identity(self) -> bool:
        return bool(self.user_name and self.user_email)

    def apply_identity(self, identity: Identity):
        self.user_name = identity.username
        self.user_display_name = identity.name
        self.user_email = identity.email

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connection":
        return cls(
            id=str(data.get("id") or ""),
            name=data.get("name") or "",
            server_url=data.get("server_url") or "",
            access_token=data.get("access_token") or "",
            is_active=bool(data.get("is_active", False)),
            user_name=data.get("user_name"),
            user_display_name=data.get("user_display_name"),
            user_email=data.get("user_email"),
        )


@dataclass
class Project:
    """某个连接下的一个仓库"""

    id: str
    connection_id: str
    name: str = ""
    path_with_namespace: str = ""
    connection_name: Optional[str] = None
    description: Optional[str] = None
    default_branch: Optional[str] = None
    web_url: Optional[str] = None
    archived: bool = False
    is_selected: bool = False
    last_accessed: Optional[int] = None

    @property
    def display_name(self) -> str:
        path = self.path_with_namespace or self.name
        if self.connection_name:
            return f"{self.connection_name} / {path}"
        return path

    @property
    def selection_key(self) -> str:
        """持久化选中状态用的键。不同服务器上的项目 ID 可能相同，因此带上连接 ID"""
        return f"{self.connection_id}:{self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id")),
            connection_id=data.get("connection_id") or "",
            name=data.get("name") or "",
            path_with_namespace=data.get("path_with_namespace") or "",
            connection_name=data.get("connection_name"),
            description=data.get("description"),
            default_branch=data.get("default_branch"),
            web_url=data.get("web_url"),
            archived=bool(data.get("archived", False)),
            is_selected=bool(data.get("is_selected", False)),
            last_accessed=data.get("last_accessed"),
        )


@dataclass
class RemoteCommit:
    """repository/commits 接口返回的提交 (线上格式)"""

    id: str
    short_id: Optional[str] = None
    message: str = ""
    title: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    created_at: Optional[str] = None
    parent_ids: List[str] = field(default_factory=list)
    is_merge: Optional[bool] = None
    branch: Optional[str] = None

    # 仅详情接口 (stats) 提供
    insertions: Optional[int] = None
    deletions: Optional[int] = None

    # 由客户端填充，非 API 字段
    project_id: Optional[str] = None
    connection_id: Optional[str] = None


@dataclass
class CommitRecord:
    """归一化后的提交记录。(connection_id, project_id, hash) 唯一。"""

    hash: str
    message: str
    author: Optional[str]
    author_email: Optional[str]
    timestamp: datetime
    branch: Optional[str] = None
    insertions: int = 0
    deletions: int = 0
    commit_type: CommitType = CommitType.OTHER
    ticket_id: Optional[str] = None
    is_merge: bool = False
    connection_id: Optional[str] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.connection_id, self.project_id, self.hash)

    @property
    def title(self) -> str:
        return self.message.split("\n")[0] if self.message else ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["commit_type"] = self.commit_type.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitRecord":
        commit_type = data.get("commit_type") or CommitType.OTHER.name
        return cls(
            hash=data["hash"],
            message=data.get("message") or "",
            author=data.get("author"),
            author_email=data.get("author_email"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            branch=data.get("branch"),
            insertions=int(data.get("insertions") or 0),
            deletions=int(data.get("deletions") or 0),
            commit_type=CommitType[commit_type],
            ticket_id=data.get("ticket_id"),
            is_merge=bool(data.get("is_merge", False)),
            connection_id=data.get("connection_id"),
            project_id=data.get("project_id"),
            project_name=data.get("project_name"),
        )


@dataclass
class CacheEntry(Generic[T]):
    """带 TTL 的缓存条目，时间单位为秒"""

    payload: T
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


def normalize_server_url(url: str) -> str:
    """去除空白和末尾斜杠，缺省协议时补全 https://"""
    normalized = (url or "").strip()
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    if not normalized.startswith(("http://", "https://")):
        normalized = "https://" + normalized
    return normalized
