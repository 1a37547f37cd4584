# exceptions.py
"""
[V1.0] 提交聚合引擎的异常层级
"""
from typing import Optional


class AggregatorError(Exception):
    """所有自定义异常的基类"""


class NetworkError(AggregatorError):
    """传输层失败且重试次数耗尽时抛出 (仅此一种错误会越过 API 客户端边界)"""

    def __init__(self, url: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"请求 {url} 在 {attempts} 次尝试后失败: {cause}")
        self.url = url
        self.attempts = attempts
        self.cause = cause


class ConfigurationError(AggregatorError):
    """连接配置无效或重复时抛出"""
