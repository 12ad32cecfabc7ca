# nexus_records/pipeline/timeline.py

import hashlib
import re
import uuid
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from nexus_records.schemas.record_schema import ClinicalRecord, ResourceKind, parse_timestamp

# YYYY-MM-DD, YYYY/MM/DD, YYYY年MM月DD日 (1-2 digit month/day, 日 optional)
DATE_PATTERN = re.compile(
    r"\d{4}-\d{1,2}-\d{1,2}"
    r"|\d{4}/\d{1,2}/\d{1,2}"
    r"|\d{4}年\d{1,2}月\d{1,2}日?"
)

# examination, diagnosis, admission (hospital), report
EVENT_KEYWORDS = ("检", "诊", "院", "报告")
OBSERVATION_KEYWORD = "检"
MARKUP_CHARS = "#>-"
EMPHASIS_CHAR = "*"
LABEL_MAX_LENGTH = 50


class RecordExtractor(Protocol):
    """Anything that turns report text into ordered ClinicalRecords."""

    def extract(self, report: str) -> List[ClinicalRecord]:
        ...


def new_record_id() -> str:
    return f"res-{uuid.uuid4().hex[:12]}"


def normalize_date_token(token: str) -> str:
    """'2023年5月1日' -> '2023-5-1', '2022/11/03' -> '2022-11-03'."""
    return token.replace("年", "-").replace("月", "-").replace("/", "-").replace("日", "")


def clean_label(line: str, token: str, max_length: int = LABEL_MAX_LENGTH) -> str:
    """
    Drop the date token, Markdown emphasis anywhere (`**bold**`, `*it*`) and
    leading block markup (`#`, `>`, `-` bullets), then truncate.
    """
    label = line.replace(token, "", 1).replace(EMPHASIS_CHAR, "")
    label = label.lstrip().lstrip(MARKUP_CHARS + " \t").strip()
    return label[:max_length].rstrip()


class KeywordDateExtractor:
    """
    Line-by-line heuristic: a line becomes a record when it carries a date
    token and one of the event keywords. Precision over recall; lines that
    miss either condition are dropped.
    """

    def __init__(
        self,
        keywords: Sequence[str] = EVENT_KEYWORDS,
        observation_keyword: str = OBSERVATION_KEYWORD,
        label_max_length: int = LABEL_MAX_LENGTH,
        id_factory: Callable[[], str] = new_record_id,
    ):
        self.keywords = tuple(keywords)
        self.observation_keyword = observation_keyword
        self.label_max_length = label_max_length
        self.id_factory = id_factory

    def extract_line(self, line: str) -> Optional[ClinicalRecord]:
        match = DATE_PATTERN.search(line)
        if match is None:
            return None
        if not any(keyword in line for keyword in self.keywords):
            return None

        token = match.group(0)
        timestamp = normalize_date_token(token)
        try:
            parse_timestamp(timestamp)
        except ValueError:
            # 2023-13-45 and friends cannot be placed on a timeline
            return None

        kind = (
            ResourceKind.OBSERVATION
            if self.observation_keyword in line
            else ResourceKind.CONDITION
        )
        return ClinicalRecord(
            id=self.id_factory(),
            kind=kind,
            timestamp=timestamp,
            label=clean_label(line, token, self.label_max_length),
            source_line=line.strip(),
        )

    def extract(self, report: str) -> List[ClinicalRecord]:
        records = []
        for line in report.splitlines():
            record = self.extract_line(line)
            if record is not None:
                records.append(record)
        return records


def extract_records(report: str) -> List[ClinicalRecord]:
    """Run the default extractor over a report."""
    return KeywordDateExtractor().extract(report)


def sort_timeline(records: Iterable[ClinicalRecord], newest_first: bool = True) -> List[ClinicalRecord]:
    """Chronological order by calendar date; ties keep extraction order."""
    return sorted(records, key=lambda r: r.iso_date, reverse=newest_first)


def group_by_kind(records: Iterable[ClinicalRecord]) -> Dict[ResourceKind, List[ClinicalRecord]]:
    groups: Dict[ResourceKind, List[ClinicalRecord]] = OrderedDict()
    for record in records:
        groups.setdefault(record.kind, []).append(record)
    return groups


def content_key(record: ClinicalRecord) -> str:
    """Content address of a record, independent of its id."""
    raw = "\x1f".join([record.kind.value, record.iso_date.isoformat(), record.label])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def merge_records(
    existing: Sequence[ClinicalRecord], new: Iterable[ClinicalRecord]
) -> List[ClinicalRecord]:
    """
    Return the records from `new` whose content is not already present in
    `existing` (or earlier in `new`).
    """
    seen = {content_key(r) for r in existing}
    fresh = []
    for record in new:
        key = content_key(record)
        if key in seen:
            continue
        seen.add(key)
        fresh.append(record)
    return fresh
