# data_sources/gitlab_api.py
import logging
import time
from datetime import date, datetime, time as dt_time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from .base import RemoteSource
from .mapper import GitLabModelMapper
from config import GlobalConfig
from exceptions import NetworkError
from models import (
    API_PATH_PREFIX,
    Connection,
    Identity,
    Project,
    RemoteCommit,
    normalize_server_url,
)

logger = logging.getLogger(__name__)

SINCE_UNTIL_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class GitLabApiClient(RemoteSource):
    """
    [V1.0] GitLab REST API (v4) 客户端
    同时支持 gitlab.com 与私有部署实例。

    - 认证: PRIVATE-TOKEN 请求头
    - 分页: 依据响应头 Link 中是否包含 rel="next"
    - 重试: 传输层失败最多 MAX_RETRIES 次，指数退避；
            429 限流不计入次数，按 Retry-After (或当前退避值) 等待后无限重试。
            这个无上限的等待循环是已知的活性风险，持续限流时调用会一直阻塞。
    """

    def __init__(
        self,
        global_config: GlobalConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        mapper: Optional[GitLabModelMapper] = None,
    ):
        self.global_config = global_config
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.mapper = mapper or GitLabModelMapper()
        self._sleep = sleep

        self.max_retries = global_config.MAX_RETRIES
        self.initial_backoff_ms = global_config.INITIAL_BACKOFF_MS
        self.page_size = global_config.PAGE_SIZE
        self.timeout = (global_config.CONNECT_TIMEOUT, global_config.READ_TIMEOUT)

    # ==================== 认证 ====================

    def validate_identity(self, server_url: str, token: str) -> Optional[Identity]:
        url = normalize_server_url(server_url) + API_PATH_PREFIX + "/user"
        response = self._execute_with_retry(url, token)
        if not response.ok:
            logger.error(f"❌ [GitLab] 令牌校验失败: HTTP {response.status_code}")
            return None

        data = self._parse_json(response, url)
        if not isinstance(data, dict):
            return None
        return self.mapper.to_identity(data)

    def get_current_user(self, connection: Connection) -> Optional[Identity]:
        identity = self.validate_identity(connection.server_url, connection.access_token)
        if identity:
            logger.info(
                f"✅ [GitLab] 当前用户: {identity.username} ({identity.name}) @ {connection.name}"
            )
        return identity

    # ==================== 项目 ====================

    def list_projects(self, connection: Connection) -> List[Project]:
        url = connection.api_base_url + "/projects"
        params = {
            "membership": "true",
            "per_page": self.page_size,
            "order_by": "name",
            "sort": "asc",
        }

        projects = self._get_paginated(
            url,
            connection.access_token,
            params,
            lambda item: self.mapper.to_project(item, connection),
        )
        logger.info(f"🌐 [GitLab] 从 {connection.name} 获取到 {len(projects)} 个项目")
        return projects

    def fetch_project(self, connection: Connection, project_id: str) -> Optional[Project]:
        url = connection.api_base_url + "/projects/" + encode_path(project_id)
        response = self._execute_with_retry(url, connection.access_token)
        if not response.ok:
            logger.error(f"❌ [GitLab] 获取项目 {project_id} 失败: HTTP {response.status_code}")
            return None

        data = self._parse_json(response, url)
        if not isinstance(data, dict):
            return None
        try:
            return self.mapper.to_project(data, connection)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ [GitLab] 项目 {project_id} 数据格式错误: {e}")
            return None

    # ==================== 提交 ====================

    def list_commits(
        self, connection: Connection, project_id: str, since: date, until: date
    ) -> List[RemoteCommit]:
        url = (
            connection.api_base_url
            + "/projects/"
            + encode_path(project_id)
            + "/repository/commits"
        )
        params = {
            "since": datetime.combine(since, dt_time.min).strftime(SINCE_UNTIL_FORMAT),
            "until": datetime.combine(until, dt_time(23, 59, 59)).strftime(
                SINCE_UNTIL_FORMAT
            ),
            "per_page": self.page_size,
        }

        def convert(item: Dict[str, Any]) -> RemoteCommit:
            commit = self.mapper.to_remote_commit(item)
            commit.project_id = project_id
            commit.connection_id = connection.id
            return commit

        commits = self._get_paginated(url, connection.access_token, params, convert)
        logger.info(f"🌐 [GitLab] 项目 {project_id} 获取到 {len(commits)} 条提交")
        return commits

    def fetch_commit_detail(
        self, connection: Connection, project_id: str, sha: str
    ) -> Optional[RemoteCommit]:
        url = (
            connection.api_base_url
            + "/projects/"
            + encode_path(project_id)
            + "/repository/commits/"
            + sha
        )
        response = self._execute_with_retry(url, connection.access_token)
        if not response.ok:
            logger.error(f"❌ [GitLab] 获取提交详情 {sha} 失败: HTTP {response.status_code}")
            return None

        data = self._parse_json(response, url)
        if not isinstance(data, dict):
            return None

        try:
            commit = self.mapper.to_remote_commit(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ [GitLab] 提交详情 {sha} 数据格式错误: {e}")
            return None
        commit.project_id = project_id
        commit.connection_id = connection.id
        return commit

    def fetch_commit_diff(
        self, connection: Connection, project_id: str, sha: str
    ) -> Optional[str]:
        url = (
            connection.api_base_url
            + "/projects/"
            + encode_path(project_id)
            + "/repository/commits/"
            + sha
            + "/diff"
        )
        response = self._execute_with_retry(url, connection.access_token)
        if not response.ok:
            logger.error(f"❌ [GitLab] 获取 Diff {sha} 失败: HTTP {response.status_code}")
            return None
        return response.text

    # ==================== 内部辅助 ====================

    def _execute_with_retry(
        self, url: str, token: str, params: Optional[Dict[str, Any]] = None
    ) -> requests.Response:
        """
        执行 GET 请求。
        传输失败计入尝试次数，429 不计入。重试耗尽时抛出 NetworkError。
        """
        backoff_ms = self.initial_backoff_ms
        attempts = 0

        while True:
            try:
                response = self.session.get(
                    url,
                    headers={"PRIVATE-TOKEN": token},
                    params=params,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                attempts += 1
                if attempts >= self.max_retries:
                    logger.error(f"❌ [GitLab] 请求失败，已重试 {attempts} 次: {url}")
                    raise NetworkError(url, attempts, e) from e
                logger.warning(
                    f"⚠️ [GitLab] 请求失败 ({e})，{backoff_ms}ms 后重试 ({attempts}/{self.max_retries})"
                )
                self._sleep(backoff_ms / 1000)
                backoff_ms *= 2
                continue

            if response.status_code == 429:
                wait_ms = self._retry_after_ms(response, backoff_ms)
                response.close()
                logger.warning(f"⚠️ [GitLab] 触发限流，等待 {wait_ms}ms 后重试")
                self._sleep(wait_ms / 1000)
                backoff_ms *= 2
                continue

            return response

    @staticmethod
    def _retry_after_ms(response: requests.Response, backoff_ms: int) -> int:
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return int(retry_after.strip()) * 1000
            except ValueError:
                logger.warning(f"⚠️ [GitLab] 无法识别的 Retry-After: {retry_after}")
        return backoff_ms

    def _get_paginated(
        self,
        url: str,
        token: str,
        params: Dict[str, Any],
        convert: Callable[[Dict[str, Any]], Any],
    ) -> List[Any]:
        """
        逐页请求直到 Link 头中不再有 rel="next"，按请求顺序拼接结果。
        非 2xx 或格式错误时停止翻页，返回已累积的数据。
        """
        results: List[Any] = []
        page = 1

        while True:
            page_params = dict(params)
            page_params["page"] = page
            response = self._execute_with_retry(url, token, page_params)

            if not response.ok:
                logger.error(
                    f"❌ [GitLab] 第 {page} 页请求失败: HTTP {response.status_code} ({url})"
                )
                break

            data = self._parse_json(response, url)
            if not isinstance(data, list):
                if data is not None:
                    logger.error(f"❌ [GitLab] 第 {page} 页响应不是数组: {url}")
                break

            for item in data:
                try:
                    results.append(convert(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"⚠️ [GitLab] 跳过格式错误的记录: {e}")

            if not has_next_page(response):
                break
            page += 1

        return results

    @staticmethod
    def _parse_json(response: requests.Response, url: str) -> Optional[Any]:
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"❌ [GitLab] 响应解析失败 ({url}): {e}")
            return None


def encode_path(path: str) -> str:
    """对路径片段做百分号编码 (如 group/project -> group%2Fproject)"""
    return quote(str(path), safe="")


def has_next_page(response: requests.Response) -> bool:
    link_header = response.headers.get("Link")
    return bool(link_header) and 'rel="next"' in link_header
