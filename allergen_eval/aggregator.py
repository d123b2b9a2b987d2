"""Aggregation of prediction records into a per-model benchmark.

Both the incremental path (rescan the whole history after one append) and the
batch path (fold records as a run proceeds) go through the same
``BenchmarkAccumulator``, so identical record sets always produce identical
benchmarks.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from functools import reduce

from allergen_eval.records import ModelBenchmark, PredictionRecord

KB_PER_MB = 1024.0


def _pct(numerator: float, denominator: float) -> float:
    return (numerator / denominator) * 100.0 if denominator > 0 else 0.0


def _avg(total: float, count: int) -> float:
    return total / count if count > 0 else 0.0


@dataclass(frozen=True)
class BenchmarkAccumulator:
    """Running sums and counts for one model.

    Instances are immutable; ``add`` returns a new accumulator.

    Attributes:
        count: Records with a quality sub-record. Denominator for quality
            averages and for the hallucination and over-prediction rates.
        efficiency_count: Records with an efficiency snapshot.
        abstention_cases: Records whose ground truth has no allergens.
    """

    count: int = 0
    sum_precision: float = 0.0
    sum_recall: float = 0.0
    sum_f1: float = 0.0
    sum_hamming: float = 0.0
    sum_fnr: float = 0.0
    exact_matches: int = 0

    hallucinations: int = 0
    over_predictions: int = 0
    abstention_cases: int = 0
    abstention_successes: int = 0

    efficiency_count: int = 0
    sum_latency_ms: float = 0.0
    sum_ttft_ms: float = 0.0
    sum_itps: float = 0.0
    sum_otps: float = 0.0
    sum_oet_ms: float = 0.0
    sum_managed_heap_kb: float = 0.0
    sum_native_heap_kb: float = 0.0
    sum_pss_kb: float = 0.0

    last_updated: datetime | None = None

    def add(self, record: PredictionRecord) -> BenchmarkAccumulator:
        """Return a new accumulator that also covers ``record``."""
        updates: dict[str, object] = {}

        quality = record.quality_metrics
        if quality is not None:
            safety = record.safety_metrics
            updates.update(
                count=self.count + 1,
                sum_precision=self.sum_precision + quality.precision,
                sum_recall=self.sum_recall + quality.recall,
                sum_f1=self.sum_f1 + quality.f1_score,
                sum_hamming=self.sum_hamming + quality.hamming_loss,
                sum_fnr=self.sum_fnr + quality.false_negative_rate,
                exact_matches=self.exact_matches + int(quality.exact_match),
            )
            if safety is not None:
                updates.update(
                    hallucinations=self.hallucinations + int(safety.is_hallucination),
                    over_predictions=self.over_predictions + int(safety.is_over_prediction),
                    abstention_cases=self.abstention_cases + int(safety.is_abstention_case),
                    abstention_successes=self.abstention_successes
                    + int(safety.is_abstention_case and safety.is_abstention_success),
                )

        efficiency = record.efficiency_metrics
        if efficiency is not None:
            updates.update(
                efficiency_count=self.efficiency_count + 1,
                sum_latency_ms=self.sum_latency_ms + efficiency.latency_ms,
                sum_ttft_ms=self.sum_ttft_ms + efficiency.ttft_ms,
                sum_itps=self.sum_itps + efficiency.itps,
                sum_otps=self.sum_otps + efficiency.otps,
                sum_oet_ms=self.sum_oet_ms + efficiency.oet_ms,
                sum_managed_heap_kb=self.sum_managed_heap_kb + efficiency.managed_heap_kb,
                sum_native_heap_kb=self.sum_native_heap_kb + efficiency.native_heap_kb,
                sum_pss_kb=self.sum_pss_kb + efficiency.pss_kb,
            )

        created_at = record.created_at
        if created_at is not None and (
            self.last_updated is None or created_at > self.last_updated
        ):
            updates["last_updated"] = created_at

        return replace(self, **updates) if updates else self

    def to_benchmark(self, model_name: str) -> ModelBenchmark:
        """Turn the sums into averages and rates for ``model_name``."""
        n = self.count
        e = self.efficiency_count
        return ModelBenchmark(
            model_name=model_name,
            precision=_avg(self.sum_precision, n),
            recall=_avg(self.sum_recall, n),
            f1_score=_avg(self.sum_f1, n),
            exact_match_rate=_pct(self.exact_matches, n),
            hamming_loss=_avg(self.sum_hamming, n),
            false_negative_rate=_avg(self.sum_fnr, n),
            hallucination_rate=_pct(self.hallucinations, n),
            over_prediction_rate=_pct(self.over_predictions, n),
            abstention_accuracy=_pct(self.abstention_successes, self.abstention_cases),
            abstention_cases=self.abstention_cases,
            latency_ms=_avg(self.sum_latency_ms, e),
            ttft_ms=_avg(self.sum_ttft_ms, e),
            itps=_avg(self.sum_itps, e),
            otps=_avg(self.sum_otps, e),
            oet_ms=_avg(self.sum_oet_ms, e),
            managed_heap_mb=_avg(self.sum_managed_heap_kb, e) / KB_PER_MB,
            native_heap_mb=_avg(self.sum_native_heap_kb, e) / KB_PER_MB,
            pss_mb=_avg(self.sum_pss_kb, e) / KB_PER_MB,
            efficiency_sample_count=e,
            sample_count=n,
            last_updated=self.last_updated,
        )


def accumulate(
    records: Iterable[PredictionRecord],
    initial: BenchmarkAccumulator | None = None,
) -> BenchmarkAccumulator:
    """Fold records into an accumulator."""
    return reduce(
        lambda acc, record: acc.add(record), records, initial or BenchmarkAccumulator()
    )


def aggregate(model_name: str, records: Iterable[PredictionRecord]) -> ModelBenchmark:
    """Compute the benchmark for a model from its full set of records.

    Args:
        model_name: Key of the benchmark documents.
        records: Every record to include, in any order.

    Returns:
        A fresh ModelBenchmark; never a patch of an earlier one.
    """
    return accumulate(records).to_benchmark(model_name)
