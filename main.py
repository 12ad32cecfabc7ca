# main.py

import argparse
import asyncio
import mimetypes
from pathlib import Path
from typing import List

from nexus_records.config import EngineConfig, SessionConfig
from nexus_records.errors import ExtractionFailed
from nexus_records.llm_api.engine_handler import build_engine
from nexus_records.pipeline.session import ClinicalSession
from nexus_records.schemas.engine_schema import NormalizedDocument


def load_document(path: Path) -> NormalizedDocument:
    """
    Stand-in for the input normalizer: images are passed through as bytes,
    everything else is read as UTF-8 text. PDFs must be rendered to page
    images first; vision endpoints do not accept them directly.
    """
    media_type, _ = mimetypes.guess_type(path.name)
    media_type = media_type or "text/plain"
    if media_type == "application/pdf":
        raise ValueError(f"{path.name}: PDF input is not supported, render its pages to images first.")
    if media_type.startswith("image/"):
        return NormalizedDocument(data=path.read_bytes(), media_type=media_type, name=path.name)
    return NormalizedDocument(text=path.read_text(encoding="utf-8"), name=path.name)


async def orchestrate_session(documents: List[NormalizedDocument], question: str = ""):
    """
    1) Take the normalized documents.
    2) Stream the extraction report to stdout.
    3) Print the timeline and wait for insights.
    4) Optionally ask one follow-up question.
    """
    engine_config = EngineConfig.from_env()
    session = ClinicalSession(
        build_engine(engine_config),
        reasoning_engine=build_engine(engine_config, engine_config.effective_reasoning_model),
        config=SessionConfig(),
    )

    # ---- 1) NORMALIZE ----
    print(f"Extracting report from {len(documents)} document(s)...")

    # ---- 2) EXTRACT (streamed) ----
    try:
        result = await session.ingest(documents, sink=lambda delta: print(delta, end="", flush=True))
    except ExtractionFailed as e:
        print(f"\n{e}")
        if e.partial_text:
            print("[partial report, no records were created]")
        return
    print()

    # ---- 3) TIMELINE + INSIGHTS ----
    print(f"\nTimeline ({len(result.records)} new records):")
    for record in session.timeline():
        print(f"  {record.timestamp:<12} {record.kind.value:<18} {record.label}")

    await session.settle()
    snapshot = session.snapshot()
    if snapshot.insight_notice:
        print(f"\nInsights unavailable: {snapshot.insight_notice}")
    for insight in snapshot.insights:
        print(f"\n[{insight.kind.value}] {insight.title}\n  {insight.description}")

    # ---- 4) FOLLOW-UP ----
    if question:
        print(f"\nQ: {question}\nA: ", end="")
        await session.ask(question, sink=lambda delta: print(delta, end="", flush=True))
        print()


def main():
    ap = argparse.ArgumentParser(description="Extract a clinical report, timeline and insights from record files.")
    ap.add_argument("files", nargs="+", type=Path, help="Images (jpg/png/...) or UTF-8 text files.")
    ap.add_argument("--ask", default="", help="Follow-up question to ask once the report is ready.")
    args = ap.parse_args()

    try:
        documents = [load_document(p) for p in args.files]
    except ValueError as e:
        ap.error(str(e))
    asyncio.run(orchestrate_session(documents, args.ask))

if __name__ == "__main__":
    main()
