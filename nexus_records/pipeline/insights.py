# nexus_records/pipeline/insights.py

import json
import re
from typing import Callable, List, Optional, Sequence

import logfire
from pydantic import TypeAdapter, ValidationError

from nexus_records.errors import MalformedResponse
from nexus_records.llm_api.engine_handler import ReasoningEngine
from nexus_records.schemas.engine_schema import EngineMessage
from nexus_records.schemas.insight_schema import Insight
from nexus_records.schemas.record_schema import ClinicalRecord, records_to_json

ANALYST_INSTRUCTION = "你是一个专业的临床医学分析师。只返回纯净的 JSON 数组，不要包含任何解释文字。"

_INSIGHT_LIST = TypeAdapter(List[Insight])
_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def build_insight_prompt(records: Sequence[ClinicalRecord]) -> str:
    """
    Ask for a JSON array of Insight objects over the full record history.
    The Insight schema is embedded so the model knows the exact shape.
    """
    schema_str = json.dumps(Insight.model_json_schema(by_alias=True), indent=2, ensure_ascii=False)
    history_json = records_to_json(list(records))

    return f"""
<INSIGHT_REQUEST>
  <HISTORY>
{history_json}
  </HISTORY>
  <SCHEMA>
{schema_str}
  </SCHEMA>
  <INSTRUCTIONS>
    基于以上医疗历史记录，进行时间维度的趋势分析和因果推理，生成 3-5 条临床洞察。
    输出且仅输出一个 JSON 数组，每个元素包含:
      id, kind ("Warning" | "Info" | "Causal"), title, description, sourceIds
    sourceIds 只能引用 HISTORY 中出现的 id。
    不要输出数组以外的任何内容。
  </INSTRUCTIONS>
</INSIGHT_REQUEST>
"""


def parse_insights(text: str) -> List[Insight]:
    """
    Parse a model answer into Insights.

    Code fences are stripped first. If what remains is not JSON, the
    outermost [...] span is tried instead (models like to add a preamble).
    A non-array top level or an invalid element raises MalformedResponse.
    """
    cleaned = _FENCE.sub("", text or "").strip()
    if not cleaned:
        raise MalformedResponse("Empty insight response.")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("["), cleaned.rfind("]")
        if start == -1 or end <= start:
            raise MalformedResponse("No JSON array found in insight response.")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"Insight array is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise MalformedResponse(f"Expected a JSON array, got {type(data).__name__}.")
    try:
        return _INSIGHT_LIST.validate_python(data)
    except ValidationError as e:
        raise MalformedResponse(f"Insight element failed validation: {e.error_count()} error(s)") from e


def _keep_known_sources(insights: List[Insight], known_ids: set) -> List[Insight]:
    kept = []
    for insight in insights:
        sources = [sid for sid in insight.sourceIds if sid in known_ids]
        if len(sources) != len(insight.sourceIds):
            logfire.debug("dropping unknown insight sources", insight=insight.id)
            insight = insight.model_copy(update={"sourceIds": sources})
        kept.append(insight)
    return kept


async def generate_insights(
    engine: ReasoningEngine,
    records: Sequence[ClinicalRecord],
    *,
    on_error: Optional[Callable[[str], None]] = None,
) -> List[Insight]:
    """
    Reduce the record history to a validated list of Insights.

    Empty history short-circuits to [] with no engine call. Failures are
    logged, passed to `on_error`, and yield [].
    """
    if not records:
        return []

    messages = [
        EngineMessage.text("system", ANALYST_INSTRUCTION),
        EngineMessage.text("user", build_insight_prompt(records).strip()),
    ]
    with logfire.span("generate_insights", records=len(records)):
        response = await engine.process(messages)
        if not response.success:
            error = f"Insight call failed: {response.error or 'No data returned'}"
        else:
            try:
                insights = parse_insights(response.text or "")
            except MalformedResponse as e:
                error = f"Insight response unusable: {e}"
            else:
                return _keep_known_sources(insights, {r.id for r in records})

        logfire.warn("insight generation failed", error=error)
        if on_error is not None:
            on_error(error)
        return []
