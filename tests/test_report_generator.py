"""Tests for the report generator module."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from allergen_eval.records import EfficiencySnapshot, PredictionRecord
from allergen_eval.report_generator import (
    BENCHMARK_EXPORT_COLUMNS,
    HISTORY_EXPORT_COLUMNS,
    ReportGenerator,
    format_value,
)


@pytest.fixture
def benchmarks() -> list[dict]:
    """Merged benchmarks; model-b has no efficiency partition."""
    return [
        {
            "model_name": "model-a",
            "sample_count": 10,
            "precision": 0.9,
            "recall": 0.8,
            "f1_score": 0.85,
            "exact_match_rate": 70.0,
            "hamming_loss": 0.05,
            "false_negative_rate": 0.2,
            "hallucination_rate": 10.0,
            "over_prediction_rate": 10.0,
            "abstention_accuracy": 50.0,
            "abstention_cases": 2,
            "latency_ms": 250.0,
            "pss_mb": 1.5,
            "efficiency_sample_count": 10,
        },
        {
            "model_name": "model-b",
            "sample_count": 4,
            "precision": 0.6,
            "f1_score": 0.5,
            "hallucination_rate": 5.0,
        },
    ]


@pytest.fixture
def history(record_factory) -> list[PredictionRecord]:
    return [
        record_factory(
            "milk", "milk", minutes=i, efficiency=EfficiencySnapshot(latency_ms=100.0 * (i + 1))
        )
        for i in range(5)
    ] + [record_factory("egg", "EMPTY", model_name="model-b", minutes=9)]


@pytest.fixture
def generator(tmp_path: Path) -> ReportGenerator:
    return ReportGenerator(output_dir=tmp_path / "reports")


class TestFormatValue:
    """Tests for format_value function."""

    def test_formats_number(self) -> None:
        assert format_value({"x": 12.345}, "x", "{:.1f}%") == "12.3%"

    def test_absent_field(self) -> None:
        assert format_value({}, "x", "{:.1f}") == "n/a"
        assert format_value({"x": None}, "x", "{:.1f}") == "n/a"
        assert format_value({"x": "bad"}, "x", "{:.1f}") == "n/a"

    def test_integer_format(self) -> None:
        assert format_value({"x": 3}, "x", "{:d}") == "3"


class TestMarkdownReport:
    """Tests for Markdown generation."""

    def test_contains_sections(self, generator: ReportGenerator, benchmarks: list[dict]) -> None:
        report = generator.generate_markdown(benchmarks)
        assert "# Allergen Extraction Benchmark Report" in report
        assert "## Quality" in report
        assert "## Safety" in report
        assert "## Efficiency" in report
        assert "## Recommendations" in report
        assert "Latency Distribution" not in report

    def test_missing_partition_shown_as_not_available(
        self, generator: ReportGenerator, benchmarks: list[dict]
    ) -> None:
        report = generator.generate_markdown(benchmarks)
        model_b_rows = [line for line in report.splitlines() if line.startswith("| model-b")]
        assert len(model_b_rows) == 3
        assert "n/a" in model_b_rows[2]

    def test_best_in_class(self, generator: ReportGenerator, benchmarks: list[dict]) -> None:
        report = generator.generate_markdown(benchmarks)
        assert "**Best F1:** model-a" in report
        assert "**Lowest hallucination rate:** model-b" in report
        assert "**Lowest latency:** model-a" in report

    def test_empty_benchmarks(self, generator: ReportGenerator) -> None:
        report = generator.generate_markdown([])
        assert "No benchmarks available." in report
        assert "**Best F1:** n/a" in report

    def test_latency_distribution(
        self,
        generator: ReportGenerator,
        benchmarks: list[dict],
        history: list[PredictionRecord],
    ) -> None:
        report = generator.generate_markdown(benchmarks, history)
        assert "## Latency Distribution" in report
        assert "| model-a | 300 |" in report
        assert "| model-b |" not in report.split("## Latency Distribution")[1]

    def test_html_escapes(self, generator: ReportGenerator) -> None:
        html = generator.generate_html([{"model_name": "<script>", "precision": 1.0}])
        assert html.startswith("<!DOCTYPE html>")
        assert "&lt;script&gt;" in html


class TestExports:
    """Tests for file and DataFrame exports."""

    def test_save_reports(self, generator: ReportGenerator, benchmarks: list[dict]) -> None:
        md_path = generator.save_markdown(benchmarks)
        html_path = generator.save_html(benchmarks)
        assert md_path.exists()
        assert html_path.exists()
        assert md_path.read_text().startswith("# Allergen")

    def test_benchmarks_frame(self, generator: ReportGenerator, benchmarks: list[dict]) -> None:
        frame = generator.benchmarks_frame(benchmarks)
        assert list(frame.columns) == BENCHMARK_EXPORT_COLUMNS
        assert len(frame) == 2
        assert pd.isna(frame.loc[1, "latency_ms"])

    def test_history_frame(
        self, generator: ReportGenerator, history: list[PredictionRecord]
    ) -> None:
        frame = generator.history_frame(history)
        assert list(frame.columns) == HISTORY_EXPORT_COLUMNS
        assert len(frame) == 6
        assert frame.loc[0, "latency_ms"] == 100.0
        assert pd.isna(frame.loc[5, "latency_ms"])

    def test_save_csv(
        self,
        generator: ReportGenerator,
        benchmarks: list[dict],
        history: list[PredictionRecord],
    ) -> None:
        benchmarks_path = generator.save_csv(benchmarks)
        history_path = generator.save_history_csv(history)
        assert pd.read_csv(benchmarks_path)["model_name"].tolist() == ["model-a", "model-b"]
        assert len(pd.read_csv(history_path)) == 6
