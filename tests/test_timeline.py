"""
Timeline resource extractor tests
"""
import itertools
import json

import pytest

from nexus_records.pipeline.timeline import (
    KeywordDateExtractor,
    content_key,
    extract_records,
    group_by_kind,
    merge_records,
    normalize_date_token,
    sort_timeline,
)
from nexus_records.schemas.record_schema import (
    ClinicalRecord,
    ResourceKind,
    records_from_json,
    records_to_json,
)


def _shape(records):
    return [(r.kind, r.timestamp, r.label) for r in records]


class TestDateTokens:
    """Date token normalization"""

    @pytest.mark.parametrize("token, expected", [
        ("2023年5月1日", "2023-5-1"),
        ("2023年5月1", "2023-5-1"),
        ("2022/11/03", "2022-11-03"),
        ("2021-7-09", "2021-7-09"),
    ])
    def test_normalize(self, token, expected):
        """Separators become '-' and the day suffix is dropped"""
        assert normalize_date_token(token) == expected

    def test_slash_date_with_keyword(self):
        """A slash date next to an exam keyword becomes an Observation"""
        records = extract_records("2022/11/03 检查")
        assert len(records) == 1
        assert records[0].timestamp == "2022-11-03"
        assert records[0].kind == ResourceKind.OBSERVATION
        assert records[0].label == "检查"

    def test_chinese_date_with_suffix(self):
        records = extract_records("2023年5月1日 门诊诊断：高血压")
        assert records[0].timestamp == "2023-5-1"
        assert "日" not in records[0].timestamp
        assert records[0].kind == ResourceKind.CONDITION


class TestExtraction:
    """Line scanning and classification"""

    def test_sample_report(self, sample_report):
        """Only dated lines with a keyword produce records, in report order"""
        records = extract_records(sample_report)
        assert _shape(records) == [
            (ResourceKind.CONDITION, "2023-03-12", "门诊诊断：2型糖尿病"),
            (ResourceKind.CONDITION, "2023-05-01", "入院治疗，血糖控制不佳"),
            (ResourceKind.OBSERVATION, "2023-6-8", "复查血常规检查，白细胞 11.2"),
            (ResourceKind.CONDITION, "2023-07-20", "出院小结"),
        ]

    def test_date_without_keyword_is_ignored(self):
        assert extract_records("2024-01-01 生日快乐") == []

    def test_keyword_without_date_is_ignored(self):
        assert extract_records("## 辅助检查") == []

    def test_invalid_calendar_date_is_ignored(self):
        assert extract_records("2023-13-45 检查报告") == []

    def test_first_date_token_wins(self):
        records = extract_records("2023-01-02 至 2023-01-09 住院治疗")
        assert len(records) == 1
        assert records[0].timestamp == "2023-01-02"
        assert records[0].label.startswith("至 2023-01-09")

    def test_inline_emphasis_removed_from_label(self):
        records = extract_records("- 2023-05-01 **入院**诊断，*复查*血糖")
        assert records[0].label == "入院诊断，复查血糖"

    def test_label_is_truncated(self):
        line = "2023-01-02 诊断：" + "很长的描述" * 30
        record = extract_records(line)[0]
        assert len(record.label) <= 50

    def test_source_line_kept(self):
        record = extract_records("  - 2023-01-02 检验报告  ")[0]
        assert record.source_line == "- 2023-01-02 检验报告"

    def test_deterministic(self, sample_report):
        """Two runs differ only in ids"""
        first = extract_records(sample_report)
        second = extract_records(sample_report)
        assert _shape(first) == _shape(second)
        assert {r.id for r in first}.isdisjoint({r.id for r in second})

    def test_ids_are_unique(self, sample_report):
        records = extract_records(sample_report * 3)
        assert len({r.id for r in records}) == len(records)

    def test_custom_keywords_and_ids(self):
        counter = itertools.count(1)
        extractor = KeywordDateExtractor(
            keywords=("exam", "diagnosis"),
            observation_keyword="exam",
            id_factory=lambda: f"r{next(counter)}",
        )
        records = extractor.extract("2023-01-02 lab exam\n2023-02-03 diagnosis: flu\n2023-03-04 party")
        assert [(r.id, r.kind) for r in records] == [
            ("r1", ResourceKind.OBSERVATION),
            ("r2", ResourceKind.CONDITION),
        ]


class TestTimelineHelpers:
    """Sorting, grouping, merging, serialization"""

    def test_sort_newest_first(self, sample_report):
        records = sort_timeline(extract_records(sample_report))
        assert [r.timestamp for r in records] == ["2023-07-20", "2023-6-8", "2023-05-01", "2023-03-12"]

    def test_sort_oldest_first(self, sample_report):
        records = sort_timeline(extract_records(sample_report), newest_first=False)
        assert records[0].timestamp == "2023-03-12"

    def test_group_by_kind(self, sample_report):
        groups = group_by_kind(extract_records(sample_report))
        assert len(groups[ResourceKind.CONDITION]) == 3
        assert len(groups[ResourceKind.OBSERVATION]) == 1

    def test_content_key_ignores_id_and_padding(self):
        a = ClinicalRecord(id="a", kind=ResourceKind.CONDITION, timestamp="2023-5-1", label="诊断")
        b = ClinicalRecord(id="b", kind=ResourceKind.CONDITION, timestamp="2023-05-01", label="诊断")
        assert content_key(a) == content_key(b)

    def test_merge_records_drops_duplicates(self, sample_report):
        existing = extract_records(sample_report)
        again = extract_records(sample_report + "\n2024-02-02 检查报告")
        fresh = merge_records(existing, again)
        assert _shape(fresh) == [(ResourceKind.OBSERVATION, "2024-02-02", "检查报告")]

    def test_serialization_round_trip(self, sample_report):
        records = extract_records(sample_report)
        payload = records_to_json(records)
        assert set(json.loads(payload)[0]) == {"id", "kind", "timestamp", "label"}
        restored = records_from_json(payload)
        assert {(r.id, r.kind, r.timestamp, r.label) for r in restored} == \
            {(r.id, r.kind, r.timestamp, r.label) for r in records}
