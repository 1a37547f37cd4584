# config.py
"""
[V1.0] 全局配置
[V1.2] 新增：重试/限流/超时参数，允许通过 .env 覆盖
"""
import os
from dotenv import load_dotenv


# --- 脚本基础路径 ---
SCRIPT_BASE_PATH = os.path.abspath(os.path.dirname(__file__))
env_path = os.path.join(SCRIPT_BASE_PATH, ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    print(f"✅ 已从脚本目录加载 .env: {env_path}")
else:
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    """读取整数型环境变量，格式错误时回退到默认值"""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"⚠️ 环境变量 {name}={raw!r} 不是整数，使用默认值 {default}")
        return default


class GlobalConfig:
    """
    提交聚合引擎的全局应用配置。
    所有模块只通过 SessionContext.global_config 读取它。
    """

    # --- 路径配置 ---
    SCRIPT_BASE_PATH: str = SCRIPT_BASE_PATH
    DATA_ROOT_DIR_NAME: str = os.getenv("DATA_ROOT_DIR", "data")
    PROJECT_CACHE_DIR_NAME: str = "gitlab-projects"

    # --- 文件名 ---
    CONNECTIONS_FILE: str = "connections.json"
    COMMIT_STORE_FILE: str = "commit_store.jsonl"

    # =================================================================
    # --- 缓存策略 ---
    # =================================================================
    # 磁盘项目缓存: 24 小时; 内存提交缓存: 1 小时
    PROJECT_CACHE_TTL_HOURS: int = _env_int("PROJECT_CACHE_TTL_HOURS", 24)
    COMMIT_CACHE_TTL_SECONDS: int = _env_int("COMMIT_CACHE_TTL_SECONDS", 60 * 60)

    # =================================================================
    # --- HTTP 客户端 ---
    # =================================================================
    PAGE_SIZE: int = 100
    MAX_RETRIES: int = _env_int("MAX_RETRIES", 3)
    INITIAL_BACKOFF_MS: int = _env_int("INITIAL_BACKOFF_MS", 1000)
    CONNECT_TIMEOUT: int = _env_int("CONNECT_TIMEOUT", 30)
    READ_TIMEOUT: int = _env_int("READ_TIMEOUT", 60)
    # 供外部 AI 分析调用使用，本核心不直接消费
    ANALYSIS_READ_TIMEOUT: int = _env_int("ANALYSIS_READ_TIMEOUT", 180)

    # --- 并发 ---
    MAX_WORKERS: int = _env_int("MAX_WORKERS", 8)

    # =================================================================
    # --- 默认连接 (可选，首次运行时自动写入 connections.json) ---
    # =================================================================
    GITLAB_URL: str = os.getenv("GITLAB_URL", "")
    GITLAB_TOKEN: str = os.getenv("GITLAB_TOKEN", "")
    GITLAB_NAME: str = os.getenv("GITLAB_NAME", "GitLab")

    def data_root_path(self) -> str:
        """data 根目录的绝对路径"""
        if os.path.isabs(self.DATA_ROOT_DIR_NAME):
            return self.DATA_ROOT_DIR_NAME
        return os.path.join(self.SCRIPT_BASE_PATH, self.DATA_ROOT_DIR_NAME)

    def project_cache_path(self) -> str:
        return os.path.join(self.data_root_path(), self.PROJECT_CACHE_DIR_NAME)

    def has_default_connection(self) -> bool:
        """检查 .env 中是否提供了可用的默认连接"""
        return bool(self.GITLAB_URL and self.GITLAB_TOKEN)
