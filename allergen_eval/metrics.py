"""Metric calculations for allergen label prediction.

Provides the per-prediction multi-label metrics (quality and safety) and the
latency distribution helper used by reports.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from allergen_eval.labels import ALL_LABELS, parse_labels


@dataclass(frozen=True)
class AllMetrics:
    """Quality and safety metrics for a single prediction.

    Attributes:
        precision: TP / (TP + FP), or 0.0 when nothing was predicted.
        recall: TP / (TP + FN), or 0.0 when the ground truth is empty.
        f1_score: 2TP / (2TP + FP + FN), or 0.0 when both sets are empty.
        exact_match: Whether the predicted set equals the ground-truth set.
        hamming_loss: (FP + FN) normalized by the vocabulary size.
        false_negative_rate: FN / (TP + FN), or 0.0 when the ground truth is empty.
        is_hallucination: Any false positive was predicted.
        is_over_prediction: Any false positive was predicted.
        is_abstention_case: The ground truth contains no allergens.
        is_abstention_success: An abstention case where nothing was predicted.
        true_positives: Labels in both sets.
        false_positives: Predicted labels missing from the ground truth.
        false_negatives: Ground-truth labels that were not predicted.
    """

    precision: float
    recall: float
    f1_score: float
    exact_match: bool
    hamming_loss: float
    false_negative_rate: float
    is_hallucination: bool
    is_over_prediction: bool
    is_abstention_case: bool
    is_abstention_success: bool
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0


@dataclass
class LatencyPercentiles:
    """Latency statistics at various percentiles.

    Attributes:
        p50: Median latency in milliseconds.
        p95: 95th percentile latency in milliseconds.
        p99: 99th percentile latency in milliseconds.
        mean: Mean latency in milliseconds.
        min: Minimum latency in milliseconds.
        max: Maximum latency in milliseconds.
    """

    p50: float
    p95: float
    p99: float
    mean: float
    min: float
    max: float


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def calculate(ground_truth: str | None, predicted: str | None) -> AllMetrics:
    """Score one prediction against its ground truth.

    Both inputs are parsed through the label vocabulary, so malformed text
    degrades to the empty set instead of raising.

    Args:
        ground_truth: Mapped allergen text for the food item.
        predicted: Allergen text produced by the model.

    Returns:
        AllMetrics with quality and safety values.
    """
    truth = parse_labels(ground_truth)
    pred = parse_labels(predicted)

    tp = len(pred & truth)
    fp = len(pred - truth)
    fn = len(truth - pred)

    is_abstention_case = not truth

    return AllMetrics(
        precision=_ratio(tp, tp + fp),
        recall=_ratio(tp, tp + fn),
        f1_score=_ratio(2 * tp, 2 * tp + fp + fn),
        exact_match=pred == truth,
        hamming_loss=(fp + fn) / len(ALL_LABELS),
        false_negative_rate=_ratio(fn, tp + fn),
        # No ingredient-level provenance, so any false positive counts for both.
        is_hallucination=fp > 0,
        is_over_prediction=fp > 0,
        is_abstention_case=is_abstention_case,
        is_abstention_success=is_abstention_case and not pred,
        true_positives=tp,
        false_positives=fp,
        false_negatives=fn,
    )


def latency_percentiles(latencies_ms: list[float]) -> LatencyPercentiles:
    """Calculate latency percentiles from a list of latency measurements.

    Args:
        latencies_ms: List of latency values in milliseconds.

    Returns:
        LatencyPercentiles with p50, p95, p99, mean, min, max.

    Raises:
        ValueError: If latencies list is empty.
    """
    if not latencies_ms:
        raise ValueError("Cannot calculate percentiles from empty latency list.")

    arr = np.array(latencies_ms, dtype=float)
    return LatencyPercentiles(
        p50=float(np.percentile(arr, 50)),
        p95=float(np.percentile(arr, 95)),
        p99=float(np.percentile(arr, 99)),
        mean=float(np.mean(arr)),
        min=float(np.min(arr)),
        max=float(np.max(arr)),
    )
