# data_sources/mapper.py
"""
[V1.0] GitLab 线上格式 -> 内部领域模型
纯函数式转换，无副作用 (除了时间解析失败时的告警日志)。
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from models import (
    CommitRecord,
    CommitType,
    Connection,
    Identity,
    Project,
    RemoteCommit,
)

logger = logging.getLogger(__name__)

# GitLab 返回的 ISO-8601 变体，按顺序尝试
TIMESTAMP_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
]

# Jira / Linear 风格的工单号
TICKET_PATTERN = re.compile(r"[A-Z]+-\d+")

# 约定式前缀都不匹配时的关键词兜底，顺序即优先级
KEYWORD_RULES = [
    (("feature", "add "), CommitType.FEATURE),
    (("fix", "bug"), CommitType.BUGFIX),
    (("refactor", "rework"), CommitType.REFACTOR),
    (("doc",), CommitType.DOCUMENTATION),
    (("test",), CommitType.TEST),
    (("performanc", "optimi"), CommitType.PERF),
    (("style", "format"), CommitType.STYLE),
    (("chore", "mainten"), CommitType.CHORE),
]


class GitLabModelMapper:
    """
    将 GitLab API 模型映射为内部模型。
    """

    # ==================== 分类 / 解析 ====================

    def determine_commit_type(self, message: Optional[str]) -> CommitType:
        if not message:
            return CommitType.OTHER

        lower_message = message.lower().strip()

        # 1. 约定式提交: "feat:" / "feat(scope):"
        for commit_type in CommitType:
            if commit_type is CommitType.OTHER:
                continue
            prefix = commit_type.prefix
            if lower_message.startswith(prefix + ":") or lower_message.startswith(
                prefix + "("
            ):
                return commit_type

        # 2. 关键词兜底
        for keywords, commit_type in KEYWORD_RULES:
            if any(keyword in lower_message for keyword in keywords):
                return commit_type

        return CommitType.OTHER

    def extract_ticket_id(self, message: Optional[str]) -> Optional[str]:
        if not message:
            return None
        match = TICKET_PATTERN.search(message)
        return match.group(0) if match else None

    def parse_timestamp(self, value: Optional[str]) -> datetime:
        """
        解析 ISO-8601 时间。保留服务器给出的本地时刻并丢弃时区偏移，
        以保证所有时间都是可以相互比较的 naive datetime。
        全部格式失败时回退为当前时间并记录告警 (这会影响排序)。
        """
        if not value:
            logger.warning("⚠️ [Mapper] 提交时间为空，回退为当前时间")
            return datetime.now()

        text = value.strip()
        for fmt in TIMESTAMP_FORMATS:
            try:
                return datetime.strptime(text, fmt).replace(tzinfo=None)
            except ValueError:
                continue

        logger.warning(f"⚠️ [Mapper] 无法解析时间戳 '{value}'，回退为当前时间")
        return datetime.now()

    def normalize_hash(self, remote: RemoteCommit) -> str:
        if remote.short_id:
            return remote.short_id
        return (remote.id or "")[:8]

    def is_merge(self, remote: RemoteCommit) -> bool:
        if remote.is_merge is not None:
            return bool(remote.is_merge)
        return len(remote.parent_ids or []) > 1

    # ==================== 线上格式 -> 模型 ====================

    def to_identity(self, data: Dict[str, Any]) -> Identity:
        return Identity(
            username=data.get("username"),
            name=data.get("name"),
            email=data.get("email") or data.get("public_email") or None,
        )

    def to_project(self, data: Dict[str, Any], connection: Connection) -> Project:
        require_mapping(data, "project")
        return Project(
            id=str(data["id"]),
            connection_id=connection.id,
            connection_name=connection.name,
            name=data.get("name") or "",
            path_with_namespace=data.get("path_with_namespace") or "",
            description=data.get("description"),
            default_branch=data.get("default_branch"),
            web_url=data.get("web_url"),
            archived=bool(data.get("archived", False)),
        )

    def to_remote_commit(self, data: Dict[str, Any]) -> RemoteCommit:
        """非对象记录抛出 TypeError；stats 不是对象时视为没有统计信息"""
        require_mapping(data, "commit")
        stats = data.get("stats")
        if not isinstance(stats, dict):
            stats = {}
        return RemoteCommit(
            id=data.get("id") or "",
            short_id=data.get("short_id"),
            message=data.get("message") or data.get("title") or "",
            title=data.get("title"),
            author_name=data.get("author_name"),
            author_email=data.get("author_email"),
            created_at=data.get("created_at"),
            parent_ids=list(data.get("parent_ids") or []),
            is_merge=data.get("is_merge"),
            branch=data.get("branch"),
            insertions=stats.get("additions"),
            deletions=stats.get("deletions"),
        )

    def to_commit_record(
        self,
        remote: Optional[RemoteCommit],
        project: Project,
        connection: Optional[Connection] = None,
    ) -> Optional[CommitRecord]:
        """转换单个提交，失败时记录日志并返回 None"""
        if remote is None:
            return None

        try:
            return CommitRecord(
                hash=self.normalize_hash(remote),
                message=remote.message,
                author=remote.author_name,
                author_email=remote.author_email,
                timestamp=self.parse_timestamp(remote.created_at),
                branch=remote.branch or project.default_branch,
                insertions=remote.insertions or 0,
                deletions=remote.deletions or 0,
                commit_type=self.determine_commit_type(remote.message),
                ticket_id=self.extract_ticket_id(remote.message),
                is_merge=self.is_merge(remote),
                connection_id=connection.id if connection else project.connection_id,
                project_id=project.id,
                project_name=project.display_name,
            )
        except Exception as e:
            logger.error(f"❌ [Mapper] 转换提交 {remote.id} 失败: {e}")
            return None

    def to_commit_records(
        self,
        remotes: List[RemoteCommit],
        project: Project,
        connection: Optional[Connection] = None,
    ) -> List[CommitRecord]:
        records = []
        for remote in remotes:
            record = self.to_commit_record(remote, project, connection)
            if record is not None:
                records.append(record)
        return records


def require_mapping(data: Any, kind: str):
    if not isinstance(data, dict):
        raise TypeError(f"{kind} 记录应为对象，实际为 {type(data).__name__}")
