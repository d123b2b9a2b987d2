"""Tests for the aggregator module."""

from __future__ import annotations

import pytest

from allergen_eval.aggregator import BenchmarkAccumulator, accumulate, aggregate
from allergen_eval.records import EfficiencySnapshot, PredictionRecord


@pytest.fixture
def three_records(record_factory) -> list[PredictionRecord]:
    """Three scored records, two of which carry efficiency data."""
    return [
        record_factory(
            "milk", "milk", minutes=0,
            efficiency=EfficiencySnapshot(latency_ms=100.0, pss_kb=1024.0),
        ),
        record_factory(
            "milk, egg", "milk", minutes=1,
            efficiency=EfficiencySnapshot(latency_ms=300.0, pss_kb=3072.0),
        ),
        record_factory("soy", "soy, sesame", minutes=2),
    ]


class TestAggregate:
    """Tests for aggregate function."""

    def test_separate_denominators(self, three_records: list[PredictionRecord]) -> None:
        benchmark = aggregate("model-a", three_records)
        assert benchmark.sample_count == 3
        assert benchmark.efficiency_sample_count == 2
        assert benchmark.latency_ms == pytest.approx(200.0)
        assert benchmark.pss_mb == pytest.approx(2.0)
        # precision: 1, 1, 0.5
        assert benchmark.precision == pytest.approx(2.5 / 3)
        # recall: 1, 0.5, 1
        assert benchmark.recall == pytest.approx(2.5 / 3)
        assert benchmark.exact_match_rate == pytest.approx(100.0 / 3)
        assert benchmark.hallucination_rate == pytest.approx(100.0 / 3)
        assert benchmark.over_prediction_rate == benchmark.hallucination_rate
        assert benchmark.false_negative_rate == pytest.approx(0.5 / 3)

    def test_no_abstention_cases(self, three_records: list[PredictionRecord]) -> None:
        benchmark = aggregate("model-a", three_records)
        assert benchmark.abstention_cases == 0
        assert benchmark.abstention_accuracy == 0.0

    def test_abstention_accuracy(self, record_factory) -> None:
        records = [
            record_factory("", "EMPTY", minutes=0),
            record_factory("EMPTY", "milk", minutes=1),
            record_factory("milk", "milk", minutes=2),
        ]
        benchmark = aggregate("model-a", records)
        assert benchmark.abstention_cases == 2
        assert benchmark.abstention_accuracy == pytest.approx(50.0)

    def test_abstention_from_legacy_documents(self) -> None:
        """Stored documents without the abstention flag still count as cases."""
        record = PredictionRecord.from_document({
            "modelName": "model-a",
            "rawAllergens": "EMPTY",
            "predictedAllergens": "EMPTY",
            "quality_metrics": {"precision": 1.0, "recall": 1.0},
            "safety_metrics": {
                "isHallucination": False,
                "isOverPrediction": False,
                "isAbstentionSuccess": True,
            },
        })
        benchmark = aggregate("model-a", [record])
        assert benchmark.abstention_cases == 1
        assert benchmark.abstention_accuracy == pytest.approx(100.0)

    def test_empty_history(self) -> None:
        benchmark = aggregate("model-a", [])
        assert benchmark.sample_count == 0
        assert benchmark.precision == 0.0
        assert benchmark.latency_ms == 0.0
        assert benchmark.last_updated is None

    def test_idempotent(self, three_records: list[PredictionRecord]) -> None:
        assert aggregate("model-a", three_records) == aggregate("model-a", three_records)

    def test_order_independent(self, three_records: list[PredictionRecord]) -> None:
        assert aggregate("model-a", three_records) == aggregate(
            "model-a", list(reversed(three_records))
        )

    def test_last_updated_is_newest_record(self, three_records: list[PredictionRecord]) -> None:
        benchmark = aggregate("model-a", three_records)
        assert benchmark.last_updated == three_records[-1].created_at

    def test_append_changes_only_affected_fields(
        self, record_factory, three_records: list[PredictionRecord]
    ) -> None:
        before = aggregate("model-a", three_records)
        extra = record_factory("milk", "milk", minutes=3)
        after = aggregate("model-a", [*three_records, extra])
        assert after.sample_count == 4
        assert after.precision != before.precision
        # No efficiency on the new record.
        assert after.latency_ms == before.latency_ms
        assert after.efficiency_sample_count == before.efficiency_sample_count
        assert after.abstention_cases == before.abstention_cases

    def test_records_without_quality_skipped(self, three_records: list[PredictionRecord]) -> None:
        bare = PredictionRecord.from_document({
            "model_name": "model-a",
            "safety_metrics": {"is_hallucination": True},
        })
        benchmark = aggregate("model-a", [*three_records, bare])
        assert benchmark.sample_count == 3
        assert benchmark.hallucination_rate == pytest.approx(100.0 / 3)


class TestBenchmarkAccumulator:
    """Tests for the incremental fold."""

    def test_add_returns_new_value(self, record_factory) -> None:
        empty = BenchmarkAccumulator()
        updated = empty.add(record_factory("milk", "milk"))
        assert empty.count == 0
        assert updated.count == 1

    def test_running_fold_matches_full_scan(self, three_records: list[PredictionRecord]) -> None:
        acc = BenchmarkAccumulator()
        for record in three_records:
            acc = acc.add(record)
        assert acc.to_benchmark("model-a") == aggregate("model-a", three_records)

    def test_accumulate_from_initial(self, three_records: list[PredictionRecord]) -> None:
        partial = accumulate(three_records[:1])
        assert accumulate(three_records[1:], partial) == accumulate(three_records)
