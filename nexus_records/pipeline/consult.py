# nexus_records/pipeline/consult.py

import asyncio
import inspect
from typing import List, Optional, Sequence

import logfire

from nexus_records.llm_api.engine_handler import ReasoningEngine
from nexus_records.llm_api.streaming import Sink, relay_stream
from nexus_records.schemas.conversation_schema import Conversation, ConversationTurn, TurnStatus
from nexus_records.schemas.engine_schema import EngineMessage, ImagePart, NormalizedDocument, TextPart
from nexus_records.schemas.record_schema import ClinicalRecord, records_to_json

REASONER_INSTRUCTION = """你是一个具备长期医疗记忆的 AI 临床顾问。
你的任务是基于提供的结构化病历报告或历史病历记录，进行时间维度的趋势分析和因果推理，
并据此回答用户的问题。资料中没有的信息请明确说明，不要编造。"""

EMPTY_CONTEXT = "（暂无病历资料）"
FAILURE_NOTICE = "智能助理暂时无法回答: {error}"
INTERRUPTED_NOTICE = "\n\n[回复中断，以上为不完整内容: {error}]"
ABORTED_NOTICE = "[回复已取消]"


def build_context_block(report: Optional[str], records: Sequence[ClinicalRecord]) -> str:
    """The report when there is one, otherwise the serialized record history."""
    if report and report.strip():
        return f"当前病历报告上下文：\n{report.strip()}"
    if records:
        return f"历史病历数据：\n{records_to_json(list(records))}"
    return f"当前病历报告上下文：\n{EMPTY_CONTEXT}"


def build_consult_messages(
    question: str,
    report: Optional[str] = None,
    records: Sequence[ClinicalRecord] = (),
    attachments: Sequence[NormalizedDocument] = (),
) -> List[EngineMessage]:
    parts = [TextPart(text=f"{build_context_block(report, records)}\n\n用户提问：{question}")]
    for doc in attachments:
        if doc.is_binary:
            if not doc.is_image:
                raise ValueError(f"Attachment {doc.name or doc.media_type} is not an image.")
            parts.append(ImagePart(media_type=doc.media_type, data=doc.data))
        else:
            parts.append(TextPart(text=doc.text))
    return [
        EngineMessage.text("system", REASONER_INSTRUCTION),
        EngineMessage(role="user", parts=parts),
    ]


async def ask_question(
    engine: ReasoningEngine,
    conversation: Conversation,
    question: str,
    *,
    report: Optional[str] = None,
    records: Sequence[ClinicalRecord] = (),
    attachments: Sequence[NormalizedDocument] = (),
    sink: Optional[Sink] = None,
) -> ConversationTurn:
    """
    Append the user's question and the assistant's reply to `conversation`.

    The assistant turn is appended empty before the engine is called and is
    filled in place, so its id is stable for the whole exchange. Failures
    become a visible notice in that turn; the user turn always stays.
    """
    question = question.strip()
    if not question:
        raise ValueError("Question must not be empty.")

    messages = build_consult_messages(question, report, records, attachments)
    conversation.append("user", question)
    turn = conversation.append("assistant", "", status=TurnStatus.STREAMING)

    with logfire.span("ask_question", turn=turn.id, streaming=sink is not None):
        try:
            if sink is None:
                response = await engine.process(messages)
                if response.success and (response.text or "").strip():
                    turn.content = response.text
                    turn.status = TurnStatus.COMPLETE
                else:
                    error = response.error or "empty reply"
                    logfire.warn("consult call failed", error=error)
                    turn.content = FAILURE_NOTICE.format(error=error)
                    turn.status = TurnStatus.FAILED
                return turn

            async def fill(delta: str) -> None:
                turn.content += delta
                result = sink(delta)
                if inspect.isawaitable(result):
                    await result

            outcome = await relay_stream(engine.stream(messages), fill)
            if outcome.ok and outcome.text.strip():
                turn.status = TurnStatus.COMPLETE
            elif outcome.text:
                turn.content = outcome.text + INTERRUPTED_NOTICE.format(error=outcome.error)
                turn.status = TurnStatus.PARTIAL
            else:
                turn.content = FAILURE_NOTICE.format(error=outcome.error or "empty reply")
                turn.status = TurnStatus.FAILED
            return turn
        except asyncio.CancelledError:
            turn.content = (turn.content + "\n\n" + ABORTED_NOTICE) if turn.content else ABORTED_NOTICE
            turn.status = TurnStatus.ABORTED
            raise
