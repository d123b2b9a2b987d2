"""Report generation for allergen benchmark results.

Generates Markdown and HTML reports with quality, safety and efficiency
tables, plus CSV exports of the merged benchmarks and the raw prediction
history.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd

from allergen_eval.metrics import latency_percentiles
from allergen_eval.records import PARTITION_FIELDS, Partition, PredictionRecord

NOT_AVAILABLE = "n/a"

# (field, column title, format)
QUALITY_COLUMNS = (
    ("precision", "Precision", "{:.3f}"),
    ("recall", "Recall", "{:.3f}"),
    ("f1_score", "F1", "{:.3f}"),
    ("exact_match_rate", "Exact Match", "{:.1f}%"),
    ("hamming_loss", "Hamming Loss", "{:.3f}"),
    ("false_negative_rate", "FNR", "{:.3f}"),
)
SAFETY_COLUMNS = (
    ("hallucination_rate", "Hallucination", "{:.1f}%"),
    ("over_prediction_rate", "Over-prediction", "{:.1f}%"),
    ("abstention_accuracy", "Abstention Acc.", "{:.1f}%"),
    ("abstention_cases", "Abstention Cases", "{:d}"),
)
EFFICIENCY_COLUMNS = (
    ("latency_ms", "Latency (ms)", "{:.0f}"),
    ("ttft_ms", "TTFT (ms)", "{:.0f}"),
    ("itps", "ITPS", "{:.1f}"),
    ("otps", "OTPS", "{:.1f}"),
    ("oet_ms", "OET (ms)", "{:.0f}"),
    ("managed_heap_mb", "Managed Heap (MB)", "{:.2f}"),
    ("native_heap_mb", "Native Heap (MB)", "{:.2f}"),
    ("pss_mb", "PSS (MB)", "{:.2f}"),
)

BENCHMARK_EXPORT_COLUMNS = [
    "model_name",
    "sample_count",
    *(name for partition in Partition for name in PARTITION_FIELDS[partition]),
    "last_updated",
]

HISTORY_EXPORT_COLUMNS = [
    "created_at",
    "model_name",
    "item_id",
    "item_name",
    "ingredients",
    "raw_ground_truth",
    "ground_truth",
    "predicted_text",
    "precision",
    "recall",
    "f1_score",
    "exact_match",
    "hamming_loss",
    "false_negative_rate",
    "is_hallucination",
    "is_over_prediction",
    "is_abstention_case",
    "is_abstention_success",
    "latency_ms",
    "ttft_ms",
    "itps",
    "otps",
    "oet_ms",
    "managed_heap_kb",
    "native_heap_kb",
    "pss_kb",
]


def _number(entry: dict[str, Any], key: str) -> float | None:
    value = entry.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def format_value(entry: dict[str, Any], key: str, fmt: str) -> str:
    """Format a benchmark field, or ``n/a`` when the field is absent."""
    value = _number(entry, key)
    if value is None:
        return NOT_AVAILABLE
    if fmt == "{:d}":
        return fmt.format(int(value))
    return fmt.format(value)


def _best(
    benchmarks: Sequence[dict[str, Any]], key: str, highest: bool = True
) -> str | None:
    candidates = [b for b in benchmarks if _number(b, key) is not None]
    if not candidates:
        return None
    pick = max if highest else min
    return str(pick(candidates, key=lambda b: b[key])["model_name"])


class ReportGenerator:
    """Generates benchmark reports and exports.

    Args:
        output_dir: Directory to write report files to.
    """

    def __init__(self, output_dir: str | Path = "reports") -> None:
        self.output_dir = Path(output_dir)

    def generate_markdown(
        self,
        benchmarks: Sequence[dict[str, Any]],
        history: Sequence[PredictionRecord] | None = None,
    ) -> str:
        """Generate a complete Markdown benchmark report.

        Args:
            benchmarks: Merged benchmark maps, one per model.
            history: Prediction records. Adds a latency distribution section
                when given.

        Returns:
            Complete Markdown report as a string.
        """
        sections = [
            self._header(),
            self._summary(benchmarks),
            self._table("Quality", benchmarks, QUALITY_COLUMNS),
            self._table("Safety", benchmarks, SAFETY_COLUMNS),
            self._table("Efficiency", benchmarks, EFFICIENCY_COLUMNS),
            self._best_in_class(benchmarks),
        ]
        if history is not None:
            sections.append(self._latency_distribution(history))
        sections.append(self._footer())
        return "\n\n".join(sections)

    def generate_html(
        self,
        benchmarks: Sequence[dict[str, Any]],
        history: Sequence[PredictionRecord] | None = None,
    ) -> str:
        """Generate an HTML benchmark report."""
        return self._wrap_html(self.generate_markdown(benchmarks, history))

    def save_markdown(
        self,
        benchmarks: Sequence[dict[str, Any]],
        history: Sequence[PredictionRecord] | None = None,
        filename: str = "report.md",
    ) -> Path:
        """Save the Markdown report to a file.

        Returns:
            Path to the saved file.
        """
        filepath = self._prepare(filename)
        filepath.write_text(self.generate_markdown(benchmarks, history))
        return filepath

    def save_html(
        self,
        benchmarks: Sequence[dict[str, Any]],
        history: Sequence[PredictionRecord] | None = None,
        filename: str = "report.html",
    ) -> Path:
        """Save the HTML report to a file.

        Returns:
            Path to the saved file.
        """
        filepath = self._prepare(filename)
        filepath.write_text(self.generate_html(benchmarks, history))
        return filepath

    @staticmethod
    def benchmarks_frame(benchmarks: Sequence[dict[str, Any]]) -> pd.DataFrame:
        """One row per model; fields missing from a partition are NaN."""
        return pd.DataFrame.from_records(list(benchmarks)).reindex(
            columns=BENCHMARK_EXPORT_COLUMNS
        )

    @staticmethod
    def history_frame(records: Sequence[PredictionRecord]) -> pd.DataFrame:
        """One row per prediction record, with sub-records flattened."""
        rows = []
        for record in records:
            row: dict[str, Any] = {
                "created_at": record.created_at.isoformat() if record.created_at else None,
                "model_name": record.model_name,
                "item_id": record.item_id,
                "item_name": record.item_name,
                "ingredients": record.ingredients,
                "raw_ground_truth": record.raw_ground_truth,
                "ground_truth": record.ground_truth,
                "predicted_text": record.predicted_text,
            }
            for sub in (record.quality_metrics, record.safety_metrics, record.efficiency_metrics):
                if sub is not None:
                    row.update(sub.model_dump())
            rows.append(row)
        return pd.DataFrame.from_records(rows).reindex(columns=HISTORY_EXPORT_COLUMNS)

    def save_csv(
        self, benchmarks: Sequence[dict[str, Any]], filename: str = "benchmarks.csv"
    ) -> Path:
        """Write the benchmark export CSV."""
        filepath = self._prepare(filename)
        self.benchmarks_frame(benchmarks).to_csv(filepath, index=False)
        return filepath

    def save_history_csv(
        self, records: Sequence[PredictionRecord], filename: str = "history.csv"
    ) -> Path:
        """Write the prediction history CSV."""
        filepath = self._prepare(filename)
        self.history_frame(records).to_csv(filepath, index=False)
        return filepath

    def _prepare(self, filename: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir / filename

    @staticmethod
    def _header() -> str:
        """Generate report header."""
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M UTC")
        return f"# Allergen Extraction Benchmark Report\n\n**Generated:** {timestamp}\n\n---"

    @staticmethod
    def _summary(benchmarks: Sequence[dict[str, Any]]) -> str:
        """Generate summary section."""
        if not benchmarks:
            return "## Summary\n\nNo benchmarks available."

        total_samples = sum(int(b.get("sample_count") or 0) for b in benchmarks)
        lines = [
            "## Summary",
            "",
            f"This report covers **{len(benchmarks)} models** "
            f"over **{total_samples} scored predictions**.",
        ]
        f1_values = [v for b in benchmarks if (v := _number(b, "f1_score")) is not None]
        if f1_values:
            average = sum(f1_values) / len(f1_values)
            lines.extend(["", f"Average F1 across models: **{average:.3f}**"])
        return "\n".join(lines)

    @staticmethod
    def _table(
        title: str,
        benchmarks: Sequence[dict[str, Any]],
        columns: Sequence[tuple[str, str, str]],
    ) -> str:
        """Generate one metrics table."""
        lines = [
            f"## {title}",
            "",
            "| Model | " + " | ".join(c[1] for c in columns) + " |",
            "|-------| " + " | ".join("---" for _ in columns) + " |",
        ]
        for entry in benchmarks:
            cells = [format_value(entry, key, fmt) for key, _, fmt in columns]
            model_name = entry.get("model_name", NOT_AVAILABLE)
            lines.append(f"| {model_name} | " + " | ".join(cells) + " |")
        return "\n".join(lines)

    @staticmethod
    def _best_in_class(benchmarks: Sequence[dict[str, Any]]) -> str:
        """Generate best-in-class callouts."""
        picks = [
            ("Best F1", _best(benchmarks, "f1_score")),
            ("Lowest hallucination rate", _best(benchmarks, "hallucination_rate", highest=False)),
            ("Best abstention accuracy", _best(benchmarks, "abstention_accuracy")),
            ("Lowest latency", _best(benchmarks, "latency_ms", highest=False)),
        ]
        lines = ["## Recommendations", ""]
        lines.extend(f"- **{label}:** {model or NOT_AVAILABLE}" for label, model in picks)
        return "\n".join(lines)

    @staticmethod
    def _latency_distribution(history: Sequence[PredictionRecord]) -> str:
        """Generate per-model latency percentiles from the raw history."""
        latencies: dict[str, list[float]] = defaultdict(list)
        for record in history:
            if record.efficiency_metrics is not None:
                latencies[record.model_name].append(record.efficiency_metrics.latency_ms)

        lines = ["## Latency Distribution", ""]
        if not latencies:
            lines.append("No latency data available.")
            return "\n".join(lines)

        lines.extend([
            "| Model | p50 (ms) | p95 (ms) | p99 (ms) | Mean (ms) | Samples |",
            "|-------|----------|----------|----------|-----------|---------|",
        ])
        for model_name in sorted(latencies):
            values = latencies[model_name]
            p = latency_percentiles(values)
            lines.append(
                f"| {model_name} | {p.p50:.0f} | {p.p95:.0f} | {p.p99:.0f} "
                f"| {p.mean:.0f} | {len(values)} |"
            )
        return "\n".join(lines)

    @staticmethod
    def _footer() -> str:
        """Generate report footer."""
        return "---\n\n*Generated by Allergen Eval*"

    @staticmethod
    def _wrap_html(markdown_content: str) -> str:
        """Wrap Markdown content in a basic HTML template.

        Args:
            markdown_content: Markdown string to wrap.

        Returns:
            HTML string with embedded Markdown (pre-formatted).
        """
        escaped = markdown_content.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Allergen Extraction Benchmark Report</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            max-width: 1100px;
            margin: 0 auto;
            padding: 2rem;
            line-height: 1.6;
        }}
        pre {{
            padding: 1.5rem;
            border-radius: 8px;
            overflow-x: auto;
            border: 1px solid #d0d7de;
            white-space: pre-wrap;
        }}
    </style>
</head>
<body>
<pre>{escaped}</pre>
</body>
</html>"""
