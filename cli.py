# cli.py
"""
[V1.0] 命令行界面 (Interface) 层
- 负责 argparse 定义、组装 SessionContext，并把命令分派给注册表 / 项目服务 / 聚合服务
- 输出为纯文本列表 (stdout)，日志走 logging
"""
import argparse
import logging
import sys
from datetime import date, datetime
from typing import List, Optional, Tuple

from context import SessionContext
from exceptions import AggregatorError, ConfigurationError
from models import CommitRecord, Connection, Project
from orchestrator import CommitAggregator, is_commit_by_current_user
from utils import week_range

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"日期格式应为 YYYY-MM-DD: {value!r}")


def setup_parser() -> argparse.ArgumentParser:
    """
    负责所有 argparse 的定义。
    """
    parser = argparse.ArgumentParser(
        description="GitLab 多实例提交聚合工具",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="输出 DEBUG 日志")
    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    subparsers.required = True

    # --- 连接管理 ---
    add_parser = subparsers.add_parser("add-connection", help="添加一个 GitLab 连接")
    add_parser.add_argument("--name", required=True, help="连接显示名称")
    add_parser.add_argument("--url", required=True, help="服务器地址 (例如 https://gitlab.com)")
    add_parser.add_argument("--token", required=True, help="Personal Access Token")
    add_parser.add_argument("--id", default=None, help="连接 ID (默认自动生成)")

    subparsers.add_parser("list-connections", help="列出所有连接")

    remove_parser = subparsers.add_parser("remove-connection", help="移除连接")
    remove_parser.add_argument("connection_id")

    activate_parser = subparsers.add_parser("activate", help="切换激活连接")
    activate_parser.add_argument("connection_id")

    rename_parser = subparsers.add_parser("rename-connection", help="修改连接名称")
    rename_parser.add_argument("connection_id")
    rename_parser.add_argument("new_name")

    test_parser = subparsers.add_parser("test-connection", help="测试连接并记录当前用户")
    test_parser.add_argument("connection_id", nargs="?", default=None, help="默认: 激活连接")

    # --- 项目 ---
    projects_parser = subparsers.add_parser("projects", help="列出项目")
    projects_parser.add_argument(
        "--refresh", action="store_true", help="忽略缓存，强制从 API 重新拉取"
    )
    projects_parser.add_argument("--connection", default=None, help="只列出指定连接的项目")

    select_parser = subparsers.add_parser(
        "select",
        help="选择参与聚合的项目 (项目 ID 或 group/project 路径)",
    )
    select_parser.add_argument("projects", nargs="*")
    select_parser.add_argument("--clear", action="store_true", help="取消全部选择")

    # --- 提交 ---
    commits_parser = subparsers.add_parser("commits", help="聚合已选项目的提交")
    range_group = commits_parser.add_mutually_exclusive_group()
    range_group.add_argument(
        "--week",
        type=_parse_date,
        default=None,
        help="该日期所在自然周 (周一 ~ 周日)。\n(默认: 本周)",
    )
    range_group.add_argument("--start", type=_parse_date, default=None, help="起始日期 YYYY-MM-DD")
    commits_parser.add_argument(
        "--end", type=_parse_date, default=None, help="结束日期 YYYY-MM-DD (与 --start 连用)"
    )
    commits_parser.add_argument("--mine", action="store_true", help="只显示本人的非合并提交")
    commits_parser.add_argument(
        "--from-store", action="store_true", help="只从本地提交存储读取，不访问网络"
    )
    commits_parser.add_argument("--save", action="store_true", help="把结果写入本地提交存储")
    commits_parser.add_argument("--details", action="store_true", help="补全每个提交的增删行数")

    subparsers.add_parser("clear-cache", help="清除提交缓存和项目文件缓存")

    return parser


def resolve_date_range(args: argparse.Namespace) -> Tuple[date, date]:
    if args.start:
        return args.start, args.end or date.today()
    if args.end:
        raise ConfigurationError("--end 需要与 --start 一起使用")
    return week_range(args.week or date.today())


def _format_connection(connection: Connection) -> str:
    marker = "*" if connection.is_active else " "
    identity = connection.user_name or connection.user_email or "未解析"
    return f"{marker} {connection.id}  {connection.name}  {connection.normalized_url}  [{identity}]"


def _format_project(project: Project) -> str:
    marker = "[x]" if project.is_selected else "[ ]"
    return f"{marker} {project.id:>8}  {project.display_name}"


def _format_commit(commit: CommitRecord) -> str:
    ticket = f" ({commit.ticket_id})" if commit.ticket_id else ""
    stats = f" +{commit.insertions}/-{commit.deletions}" if commit.insertions or commit.deletions else ""
    return (
        f"{commit.timestamp:%Y-%m-%d %H:%M}  {commit.hash}  {commit.commit_type.value:<8} "
        f"{commit.project_name}  {commit.author}: {commit.title}{ticket}{stats}"
    )


# ==================== 命令实现 ====================


def cmd_add_connection(context: SessionContext, args: argparse.Namespace) -> int:
    connection = Connection(
        id=args.id or "",
        name=args.name,
        server_url=args.url,
        access_token=args.token,
    )
    future = context.registry.add_connection_and_resolve_identity(connection)
    try:
        identity = future.result()
    except AggregatorError as e:
        logger.warning(f"⚠️ 连接已添加，但获取用户信息失败: {e}")
        identity = None

    print(f"已添加连接: {connection.id}")
    if identity is not None:
        print(f"当前用户: {identity.username} <{identity.email or '-'}>")
    return 0


def cmd_list_connections(context: SessionContext, args: argparse.Namespace) -> int:
    connections = context.registry.get_connections()
    if not connections:
        print("尚未配置任何连接，请先运行 add-connection")
        return 0
    for connection in connections:
        print(_format_connection(connection))
    return 0


def cmd_remove_connection(context: SessionContext, args: argparse.Namespace) -> int:
    if not context.registry.remove_connection(args.connection_id):
        logger.error(f"❌ 连接不存在: {args.connection_id}")
        return 1
    context.commit_cache.invalidate_connection(args.connection_id)
    context.project_service.clear_file_cache(args.connection_id)
    return 0


def cmd_activate(context: SessionContext, args: argparse.Namespace) -> int:
    return 0 if context.registry.set_active_connection(args.connection_id) else 1


def cmd_rename_connection(context: SessionContext, args: argparse.Namespace) -> int:
    connection = context.registry.get_connection(args.connection_id)
    if connection is None:
        logger.error(f"❌ 连接不存在: {args.connection_id}")
        return 1
    connection.name = args.new_name
    aggregator = CommitAggregator(context)
    aggregator.initialize().result()
    return 0 if aggregator.apply_connection_update(connection) else 1


def cmd_test_connection(context: SessionContext, args: argparse.Namespace) -> int:
    if args.connection_id:
        connection = context.registry.get_connection(args.connection_id)
    else:
        connection = context.registry.get_active_connection()
    if connection is None:
        logger.error("❌ 找不到要测试的连接")
        return 1

    if not context.registry.test_connection(connection):
        return 1
    print(f"连接正常: {connection.name}, 用户: {connection.user_name} <{connection.user_email or '-'}>")
    return 0


def cmd_projects(context: SessionContext, args: argparse.Namespace) -> int:
    service = context.project_service
    if args.refresh:
        service.refresh_all_projects(force=True)
    else:
        service.ensure_projects_loaded().result()

    if args.connection:
        projects = service.get_projects_for_connection(args.connection)
    else:
        projects = service.get_all_projects()

    if not projects:
        print("没有可用的项目")
        return 0
    for project in projects:
        print(_format_project(project))
    return 0


def cmd_select(context: SessionContext, args: argparse.Namespace) -> int:
    service = context.project_service
    service.ensure_projects_loaded().result()

    if args.clear:
        service.set_selected_projects([])
        print("已取消全部选择")
        return 0

    wanted = set(args.projects)
    all_projects = service.get_all_projects()
    chosen = [p for p in all_projects if p.id in wanted or p.path_with_namespace in wanted]

    matched = {p.id for p in chosen} | {p.path_with_namespace for p in chosen}
    for unknown in sorted(wanted - matched):
        logger.warning(f"⚠️ 未找到项目: {unknown}")

    # 追加到已有选择
    current = [p for p in all_projects if p.is_selected]
    service.set_selected_projects(current + chosen)
    print(f"已选择 {len({(p.connection_id, p.id) for p in current + chosen})} 个项目")
    return 0


def cmd_commits(context: SessionContext, args: argparse.Namespace) -> int:
    start, end = resolve_date_range(args)
    aggregator = CommitAggregator(context)

    if args.from_store:
        # 离线模式: 项目也只从文件缓存读取
        projects = context.project_service.get_cached_selected_projects()
    else:
        aggregator.initialize().result()
        projects = context.project_service.get_selected_projects()

    if not projects:
        print("尚未选择任何项目，请先运行 select")
        return 0

    if args.from_store:
        commits = aggregator.get_my_commits_for_week_from_cache(start, end, projects)
    elif args.details:
        commits = _get_detailed_commits(aggregator, projects, start, end, args.mine)
    elif args.mine:
        commits = aggregator.get_my_commits_for_week(start, end, projects)
    else:
        commits = aggregator.get_commits_for_week(start, end, projects)

    print(f"{start} ~ {end}: {len(commits)} 条提交")
    for commit in commits:
        print(_format_commit(commit))

    if args.save and not args.from_store:
        aggregator.save_commits(commits)
    return 0


def _get_detailed_commits(
    aggregator: CommitAggregator, projects: List[Project], start: date, end: date, mine: bool
) -> List[CommitRecord]:
    commits: List[CommitRecord] = []
    for project in projects:
        try:
            commits.extend(aggregator.get_commits_with_details(project, start, end))
        except AggregatorError as e:
            logger.error(f"❌ 获取项目 {project.display_name} 的提交详情失败: {e}")
    commits.sort(key=lambda c: c.timestamp, reverse=True)

    if mine:
        connections = {c.id: c for c in aggregator.registry.get_connections()}
        commits = [
            c for c in commits if not c.is_merge and is_commit_by_current_user(c, connections)
        ]
    return commits


def cmd_clear_cache(context: SessionContext, args: argparse.Namespace) -> int:
    CommitAggregator(context).clear_cache()
    context.project_service.clear_project_cache()
    print("缓存已清除")
    return 0


COMMANDS = {
    "add-connection": cmd_add_connection,
    "list-connections": cmd_list_connections,
    "remove-connection": cmd_remove_connection,
    "activate": cmd_activate,
    "rename-connection": cmd_rename_connection,
    "test-connection": cmd_test_connection,
    "projects": cmd_projects,
    "select": cmd_select,
    "commits": cmd_commits,
    "clear-cache": cmd_clear_cache,
}


def run_cli(argv: Optional[List[str]] = None):
    """
    主入口点。
    """
    parser = setup_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    context = SessionContext.create()
    try:
        exit_code = COMMANDS[args.command](context, args)
    except ConfigurationError as e:
        logger.error(f"❌ 配置错误: {e}")
        exit_code = 2
    except AggregatorError as e:
        logger.error(f"❌ {e}")
        exit_code = 1
    finally:
        context.close()

    sys.exit(exit_code)
