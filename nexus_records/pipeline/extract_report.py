# nexus_records/pipeline/extract_report.py

from typing import List, Optional, Sequence

import logfire
from pydantic import BaseModel, Field

from nexus_records.errors import ExtractionFailed
from nexus_records.llm_api.engine_handler import ReasoningEngine
from nexus_records.llm_api.streaming import Sink, relay_stream
from nexus_records.pipeline.timeline import KeywordDateExtractor, RecordExtractor
from nexus_records.schemas.engine_schema import (
    EngineMessage,
    ImagePart,
    NormalizedDocument,
    TextPart,
)
from nexus_records.schemas.record_schema import ClinicalRecord

EXTRACTION_INSTRUCTION = """
<REPORT_NORMALIZATION_REQUEST>
  <ROLE>
    你是由临床主任、医学统计学家、临床健康营养师组成的多学科病历梳理团队。
  </ROLE>
  <INPUT>
    患者的全部病历资料：门诊病历、住院病案、检查检验报告、医嘱单、病程记录、影像报告、
    既往史/过敏史/家族史等。资料可能是图片，也可能是文本。
  </INPUT>
  <INSTRUCTIONS>
    输出一份标准化、可直接使用的病历报告，必须包含以下五个模块：
      1. 核心信息区：基本信息（脱敏）、过敏/禁忌史（重点加粗）；
      2. 临床诊疗区：按「一般情况-主诉-现病史-既往史-体格检查-辅助检查-诊断结论-诊疗经过-目前病情-诊疗建议」梳理；
      3. 量化数据区：用 Markdown 表格列出检验/检查指标，异常指标标注参考范围；
      4. 多科室适配区：分「临床建议、统计重点、营养要点」三栏；
      5. 风险提示区：临床高风险点、并发症风险、营养禁忌。
    每一条就诊、检查、诊断、入院/出院、报告事件单独成行，并在行首写出日期，
    日期格式使用 YYYY-MM-DD。使用标题层级划分模块。
  </INSTRUCTIONS>
</REPORT_NORMALIZATION_REQUEST>
"""

DEFAULT_REQUEST_TEXT = "请解析以下病历资料，生成多维度标准化报告。"


class ExtractionResult(BaseModel):
    report: str
    records: List[ClinicalRecord] = Field(default_factory=list)
    streamed: bool = False


def build_extraction_messages(
    documents: Sequence[NormalizedDocument] = (),
    text: Optional[str] = None,
    *,
    max_image_bytes: Optional[int] = None,
) -> List[EngineMessage]:
    """
    One system message with the parser instruction, then one user message
    carrying every document in order.
    """
    text = (text or "").strip()
    if not documents and not text:
        raise ValueError("At least one document or text block is required.")

    parts = [TextPart(text=text or DEFAULT_REQUEST_TEXT)]
    for doc in documents:
        if doc.is_binary:
            if not doc.is_image:
                raise ValueError(
                    f"Document {doc.name or doc.media_type} is binary {doc.media_type}; "
                    "only images can be sent, render other formats to images first."
                )
            if max_image_bytes is not None and doc.size > max_image_bytes:
                raise ValueError(
                    f"Document {doc.name or doc.media_type} is {doc.size} bytes, "
                    f"over the {max_image_bytes} byte limit."
                )
            parts.append(ImagePart(media_type=doc.media_type, data=doc.data))
        else:
            parts.append(TextPart(text=f"病历资料内容：\n{doc.text}"))

    return [
        EngineMessage.text("system", EXTRACTION_INSTRUCTION.strip()),
        EngineMessage(role="user", parts=parts),
    ]


async def extract_report(
    engine: ReasoningEngine,
    documents: Sequence[NormalizedDocument] = (),
    text: Optional[str] = None,
    *,
    sink: Optional[Sink] = None,
    extractor: Optional[RecordExtractor] = None,
    max_image_bytes: Optional[int] = None,
) -> ExtractionResult:
    """
    Produce a normalized report and the records derived from it.

    Buffered when `sink` is None; otherwise each delta is handed to `sink`
    as it arrives. Raises ExtractionFailed on any failure, in which case no
    records are created.
    """
    messages = build_extraction_messages(documents, text, max_image_bytes=max_image_bytes)
    extractor = extractor or KeywordDateExtractor()

    with logfire.span("extract_report", documents=len(documents), streaming=sink is not None):
        if sink is None:
            response = await engine.process(messages)
            if not response.success:
                raise ExtractionFailed(
                    response.error or "No data returned", status_code=response.status_code
                )
            report = response.text or ""
        else:
            outcome = await relay_stream(engine.stream(messages), sink)
            if not outcome.ok:
                raise ExtractionFailed(
                    outcome.error or "Stream failed",
                    status_code=outcome.status_code,
                    partial_text=outcome.text,
                )
            report = outcome.text

        if not report.strip():
            raise ExtractionFailed("Engine returned an empty report")

        records = extractor.extract(report)
        logfire.info("report extracted", chars=len(report), records=len(records))
        return ExtractionResult(report=report, records=records, streamed=sink is not None)
