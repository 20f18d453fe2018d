"""
Column label translation.

Only labels change: each row is re-keyed from the original column name to a
display label and ``column_name_map`` records display -> original, so the
raw names can always be recovered without re-querying.
"""

import logging
import re

from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.models import LLMMessage, LLMRequest
from chatbi.models.agent import AgentError
from chatbi.models.chat import TabularResult
from chatbi.prompts.composer import PromptComposer
from chatbi.utils.json_parser import extract_json_object

logger = logging.getLogger(__name__)

STATIC_DICTIONARY: dict[str, str] = {
    "id": "编号",
    "name": "名称",
    "title": "标题",
    "email": "邮箱",
    "phone": "电话",
    "mobile": "手机",
    "address": "地址",
    "city": "城市",
    "province": "省份",
    "country": "国家",
    "region": "地区",
    "status": "状态",
    "type": "类型",
    "category": "类别",
    "description": "描述",
    "remark": "备注",
    "amount": "金额",
    "price": "价格",
    "quantity": "数量",
    "qty": "数量",
    "count": "数量",
    "total": "合计",
    "sum": "总和",
    "avg": "平均",
    "average": "平均值",
    "max": "最大值",
    "min": "最小值",
    "revenue": "收入",
    "sales": "销售额",
    "cost": "成本",
    "profit": "利润",
    "date": "日期",
    "time": "时间",
    "month": "月份",
    "year": "年份",
    "day": "日",
    "created": "创建",
    "updated": "更新",
    "at": "时间",
    "customer": "客户",
    "order": "订单",
    "orders": "订单",
    "product": "产品",
    "user": "用户",
    "account": "账户",
    "contact": "联系人",
    "opportunity": "商机",
    "company": "公司",
    "department": "部门",
    "employee": "员工",
    "level": "等级",
    "code": "代码",
    "no": "编号",
    "number": "编号",
}

PHRASES: dict[str, str] = {
    "created_at": "创建时间",
    "updated_at": "更新时间",
    "order_date": "下单日期",
    "order_count": "订单数量",
    "customer_count": "客户数量",
    "total_amount": "总金额",
    "user_name": "用户名",
    "full_name": "姓名",
}


def static_label(column: str) -> str:
    """Dictionary translation; unknown tokens are kept as-is."""
    lowered = column.lower()
    if lowered in PHRASES:
        return PHRASES[lowered]
    if lowered in STATIC_DICTIONARY:
        return STATIC_DICTIONARY[lowered]
    tokens = [t for t in re.split(r"[_\s]+", lowered) if t]
    if not tokens or not any(t in STATIC_DICTIONARY for t in tokens):
        return column
    return "".join(STATIC_DICTIONARY.get(t, t) for t in tokens)


def unique_labels(columns: list[str], labels: dict[str, str]) -> dict[str, str]:
    """Original -> label with collisions resolved by appending the original name."""
    resolved: dict[str, str] = {}
    seen: set[str] = set()
    for column in columns:
        label = str(labels.get(column) or column).strip() or column
        if label in seen or (label != column and label in columns):
            label = f"{label}({column})"
        seen.add(label)
        resolved[column] = label
    return resolved


def relabel(result: TabularResult, labels: dict[str, str]) -> TabularResult:
    mapping = unique_labels(result.columns, labels)
    if all(mapping[c] == c for c in result.columns):
        return result
    rows = [{mapping.get(key, key): value for key, value in row.items()} for row in result.rows]
    return result.model_copy(
        update={
            "columns": [mapping[c] for c in result.columns],
            "rows": rows,
            "column_name_map": {label: original for original, label in mapping.items()},
        }
    )


def restore_original(result: TabularResult) -> TabularResult:
    """Undo ``relabel``."""
    if not result.column_name_map:
        return result
    reverse = result.column_name_map
    return result.model_copy(
        update={
            "columns": [reverse.get(c, c) for c in result.columns],
            "rows": [{reverse.get(k, k): v for k, v in row.items()} for row in result.rows],
            "column_name_map": {},
        }
    )


class ColumnTranslator:
    """
    Model-first column labelling with a static dictionary fallback.

    Args:
        llm_provider: Provider for the translation call; None disables it
        composer: Renders the translation prompt
        sample_rows: Rows sent to the model as context
    """

    def __init__(
        self,
        llm_provider: BaseLLMProvider | None = None,
        composer: PromptComposer | None = None,
        sample_rows: int = 3,
    ):
        self.llm = llm_provider
        self.composer = composer or PromptComposer()
        self.sample_rows = sample_rows

    async def translate(self, result: TabularResult, question: str = "") -> TabularResult:
        if not result.columns or result.column_name_map:
            return result
        labels: dict[str, str] = {}
        if self.llm is not None:
            labels = await self._llm_labels(result, question)
        for column in result.columns:
            if not labels.get(column):
                labels[column] = static_label(column)
        return relabel(result, labels)

    async def _llm_labels(self, result: TabularResult, question: str) -> dict[str, str]:
        prompt = self.composer.column_translation_prompt(
            question, result.columns, result.rows, self.sample_rows
        )
        try:
            response = await self.llm.complete(
                LLMRequest(messages=[LLMMessage(role="user", content=prompt)], temperature=0.0)
            )
        except AgentError as e:
            logger.warning(f"Column translation call failed, using dictionary: {e.message}")
            return {}
        payload = extract_json_object(response.content) or {}
        labels = {
            column: str(payload[column]).strip()
            for column in result.columns
            if isinstance(payload.get(column), str) and str(payload[column]).strip()
        }
        logger.debug(f"Model translated {len(labels)}/{len(result.columns)} column labels")
        return labels
