"""
Intent classification.

A keyword/length heuristic routes each message before any schema or model
work happens:

    feature_list  "what can you do" style requests
    non_query     greetings, thanks, small talk
    query         everything else (the conservative default)
"""

import logging
import re
from typing import Literal

logger = logging.getLogger(__name__)

Intent = Literal["feature_list", "non_query", "query"]
DisplayFormat = Literal["chart", "table", "report"]

FEATURE_LIST_PHRASES = (
    "你能做什么",
    "你可以做什么",
    "你会做什么",
    "你有什么功能",
    "有哪些功能",
    "有什么功能",
    "功能列表",
    "能帮我做什么",
    "可以帮我做什么",
    "怎么使用",
    "如何使用",
    "使用帮助",
    "what can you do",
    "what do you do",
    "help me get started",
    "list your features",
    "your capabilities",
)

CONVERSATIONAL_KEYWORDS = (
    "你好",
    "您好",
    "嗨",
    "哈喽",
    "早上好",
    "下午好",
    "晚上好",
    "谢谢",
    "感谢",
    "多谢",
    "再见",
    "拜拜",
    "好的",
    "收到",
    "辛苦了",
    "你是谁",
    "hello",
    "hi",
    "hey",
    "thanks",
    "thank you",
    "bye",
    "good morning",
    "ok",
)

QUERY_KEYWORDS = (
    "查询",
    "统计",
    "汇总",
    "列出",
    "显示",
    "查看",
    "查一下",
    "多少",
    "数量",
    "总数",
    "总额",
    "金额",
    "平均",
    "最大",
    "最小",
    "排名",
    "排行",
    "趋势",
    "分布",
    "占比",
    "对比",
    "哪些",
    "哪个",
    "所有",
    "全部",
    "每个",
    "报表",
    "报告",
    "图表",
    "数据",
    "select",
    "count",
    "sum",
    "avg",
    "how many",
    "how much",
    "list",
    "show",
    "top",
    "total",
    "average",
    "trend",
)

SHORT_MESSAGE_LENGTH = 10

_REPORT_WORDS = ("报告", "报表", "report", "分析报告")
_CHART_WORDS = (
    "图表",
    "柱状图",
    "折线图",
    "饼图",
    "趋势图",
    "可视化",
    "画图",
    "画个图",
    "chart",
    "graph",
    "plot",
    "visualize",
)
_TABLE_WORDS = ("表格", "列表", "明细", "table", "list")


def _contains(text: str, keywords: tuple[str, ...]) -> bool:
    for keyword in keywords:
        if keyword.isascii():
            if re.search(rf"\b{re.escape(keyword)}\b", text):
                return True
        elif keyword in text:
            return True
    return False


def classify(text: str | None) -> Intent:
    """Classify a user message. Pure heuristic, no model call."""
    normalized = (text or "").strip().lower()
    if not normalized:
        return "non_query"

    if any(phrase in normalized for phrase in FEATURE_LIST_PHRASES):
        return "feature_list"

    has_query_keyword = _contains(normalized, QUERY_KEYWORDS)
    if has_query_keyword:
        return "query"

    if _contains(normalized, CONVERSATIONAL_KEYWORDS):
        return "non_query"
    if len(normalized) < SHORT_MESSAGE_LENGTH:
        return "non_query"

    return "query"


def detect_display_format(text: str | None) -> DisplayFormat | None:
    """Requested presentation, if any. Report wins over chart, chart over table."""
    normalized = (text or "").lower()
    if _contains(normalized, _REPORT_WORDS):
        return "report"
    if _contains(normalized, _CHART_WORDS):
        return "chart"
    if _contains(normalized, _TABLE_WORDS):
        return "table"
    return None


def query_shape(text: str | None) -> str | None:
    """Rough query shape used as a prompt hint: list_all, aggregate or statistics."""
    normalized = (text or "").lower()
    if _contains(normalized, ("数量", "总数", "有多少", "how many")):
        return "statistics"
    if _contains(normalized, ("统计", "汇总", "每个", "按", "count", "sum")):
        return "aggregate"
    if _contains(normalized, ("所有", "全部", "列出")):
        return "list_all"
    return None
