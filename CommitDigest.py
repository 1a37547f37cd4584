# CommitDigest.py
"""
GitLab 提交聚合工具 (V1.0)
- cli.py: 命令行界面和会话组装
- context.py: 会话上下文 (SessionContext)
- orchestrator.py: 提交聚合 (CommitAggregator)
- CommitDigest.py: 仅作为主入口启动器
"""

import logging
import sys

# 1. 初始化日志 (必须在所有模块导入之前完成)
import utils

utils.setup_logging()

logger = logging.getLogger(__name__)


if __name__ == "__main__":
    try:
        # 延迟导入 cli 模块，确保日志已配置
        import cli

        cli.run_cli()

    except Exception as e:
        logger.error(f"❌ 发生未处理的全局异常: {e}", exc_info=True)
        sys.exit(1)
