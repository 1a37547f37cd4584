import logging
import re
import sys
from datetime import date, datetime, time, timedelta
from typing import Tuple


def setup_logging(level: int = logging.INFO):
    """配置全局日志"""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def sanitize_filename(value: str) -> str:
    """把 [A-Za-z0-9.-] 以外的字符替换为下划线"""
    return re.sub(r"[^a-zA-Z0-9.-]", "_", value)


def day_bounds(since: date, until: date) -> Tuple[datetime, datetime]:
    """闭区间: since 当天 00:00:00 到 until 当天 23:59:59"""
    return (
        datetime.combine(since, time.min),
        datetime.combine(until, time(23, 59, 59)),
    )


def week_range(day: date) -> Tuple[date, date]:
    """返回 day 所在自然周的周一和周日"""
    week_start = day - timedelta(days=day.weekday())
    return week_start, week_start + timedelta(days=6)
