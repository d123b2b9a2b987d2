"""Typed document schema for prediction records and model benchmarks.

Documents read back from a store are decoded once, here, into pydantic models.
Everything downstream works with typed attributes and never inspects raw maps.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)

from allergen_eval.dataset import FoodItem
from allergen_eval.labels import is_empty_label_text, normalize_ground_truth
from allergen_eval.metrics import AllMetrics, calculate

SCHEMA_VERSION = 2


class Partition(StrEnum):
    """The three keyed destinations holding pieces of one ModelBenchmark."""

    QUALITY = "quality"
    SAFETY = "safety"
    EFFICIENCY = "efficiency"


class _TolerantModel(BaseModel):
    """Base model that replaces undecodable values with the field default."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("*", mode="wrap")
    @classmethod
    def _default_on_error(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        field = cls.model_fields[info.field_name]
        if value is None:
            return field.get_default(call_default_factory=True)
        try:
            return handler(value)
        except ValidationError:
            return field.get_default(call_default_factory=True)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


_ABSTENTION_KEYS = frozenset({"is_abstention_case", "isAbstentionCase"})


def _legacy_ground_truth(data: dict[str, Any]) -> str | None:
    """Mapped ground truth of a raw document, else its raw allergen text.

    Returns None when the document carries neither.
    """
    present = [
        value
        for name in ("ground_truth", "mappedAllergens", "raw_ground_truth", "rawAllergens")
        if isinstance(value := data.get(name), str)
    ]
    for value in present:
        if value.strip():
            return value
    return present[0] if present else None


class QualityMetrics(_TolerantModel):
    """Per-prediction quality values (Table 2 of the benchmark)."""

    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = Field(0.0, validation_alias=_alias("f1_score", "f1Score"))
    exact_match: bool = Field(False, validation_alias=_alias("exact_match", "exactMatch"))
    hamming_loss: float = Field(0.0, validation_alias=_alias("hamming_loss", "hammingLoss"))
    false_negative_rate: float = Field(
        0.0, validation_alias=_alias("false_negative_rate", "falseNegativeRate")
    )

    @classmethod
    def from_metrics(cls, metrics: AllMetrics) -> QualityMetrics:
        return cls(
            precision=metrics.precision,
            recall=metrics.recall,
            f1_score=metrics.f1_score,
            exact_match=metrics.exact_match,
            hamming_loss=metrics.hamming_loss,
            false_negative_rate=metrics.false_negative_rate,
        )


class SafetyFlags(_TolerantModel):
    """Per-prediction safety flags (Table 3 of the benchmark)."""

    is_hallucination: bool = Field(
        False, validation_alias=_alias("is_hallucination", "isHallucination")
    )
    is_over_prediction: bool = Field(
        False, validation_alias=_alias("is_over_prediction", "isOverPrediction")
    )
    is_abstention_case: bool = Field(
        False, validation_alias=_alias("is_abstention_case", "isAbstentionCase")
    )
    is_abstention_success: bool = Field(
        False, validation_alias=_alias("is_abstention_success", "isAbstentionSuccess")
    )

    @classmethod
    def from_metrics(cls, metrics: AllMetrics) -> SafetyFlags:
        return cls(
            is_hallucination=metrics.is_hallucination,
            is_over_prediction=metrics.is_over_prediction,
            is_abstention_case=metrics.is_abstention_case,
            is_abstention_success=metrics.is_abstention_success,
        )


class EfficiencySnapshot(_TolerantModel):
    """Hardware and timing measurements for one inference call.

    Memory values are deltas in KB, as collected; they are converted to MB
    only when averaged into a benchmark.
    """

    latency_ms: float = Field(0.0, validation_alias=_alias("latency_ms", "latencyMs"))
    ttft_ms: float = Field(0.0, validation_alias=_alias("ttft_ms", "ttft"))
    itps: float = 0.0
    otps: float = 0.0
    oet_ms: float = Field(0.0, validation_alias=_alias("oet_ms", "oet"))
    managed_heap_kb: float = Field(
        0.0, validation_alias=_alias("managed_heap_kb", "javaHeapKb")
    )
    native_heap_kb: float = Field(
        0.0, validation_alias=_alias("native_heap_kb", "nativeHeapKb")
    )
    pss_kb: float = Field(0.0, validation_alias=_alias("pss_kb", "totalPssKb"))


class PredictionRecord(_TolerantModel):
    """One immutable evaluated prediction, as stored in the history log."""

    item_id: str = Field("", validation_alias=_alias("item_id", "dataId"))
    model_name: str = Field("", validation_alias=_alias("model_name", "modelName"))
    item_name: str = Field("", validation_alias=_alias("item_name", "name"))
    ingredients: str = ""
    raw_ground_truth: str = Field(
        "", validation_alias=_alias("raw_ground_truth", "rawAllergens")
    )
    ground_truth: str = Field("", validation_alias=_alias("ground_truth", "mappedAllergens"))
    predicted_text: str = Field(
        "", validation_alias=_alias("predicted_text", "predictedAllergens")
    )
    quality_metrics: QualityMetrics | None = None
    safety_metrics: SafetyFlags | None = None
    efficiency_metrics: EfficiencySnapshot | None = None
    created_at: datetime | None = Field(
        None, validation_alias=_alias("created_at", "timestamp")
    )
    schema_version: int = SCHEMA_VERSION

    @field_validator("created_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_layout(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # First-generation documents kept quality and safety in one map.
        if isinstance(data.get("validation_metrics"), dict):
            legacy = data["validation_metrics"]
            data.setdefault("quality_metrics", legacy)
            data.setdefault("safety_metrics", legacy)
            data.setdefault("schema_version", 1)

        # Older documents never stored the abstention case; it follows from the truth.
        safety = data.get("safety_metrics")
        if isinstance(safety, dict) and not _ABSTENTION_KEYS & safety.keys():
            truth = _legacy_ground_truth(data)
            if truth is not None:
                data["safety_metrics"] = {
                    **safety,
                    "is_abstention_case": is_empty_label_text(truth),
                }
        return data

    @classmethod
    def evaluate(
        cls,
        item: FoodItem,
        model_name: str,
        predicted_text: str,
        efficiency: EfficiencySnapshot | None = None,
        created_at: datetime | None = None,
    ) -> PredictionRecord:
        """Score a model prediction for a food item and build its record.

        The mapped allergen text is the ground truth; the raw text is kept for
        display only.
        """
        metrics = calculate(item.allergens_mapped, predicted_text)
        return cls(
            item_id=item.id,
            model_name=model_name,
            item_name=item.name,
            ingredients=item.ingredients,
            raw_ground_truth=normalize_ground_truth(item.allergens),
            ground_truth=normalize_ground_truth(item.allergens_mapped),
            predicted_text=predicted_text,
            quality_metrics=QualityMetrics.from_metrics(metrics),
            safety_metrics=SafetyFlags.from_metrics(metrics),
            efficiency_metrics=efficiency,
            created_at=created_at,
        )

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> PredictionRecord:
        """Decode a stored document, tolerating missing or malformed fields."""
        return cls.model_validate(document)

    def to_document(self) -> dict[str, Any]:
        """Serialize to JSON-compatible primitives for a document store."""
        return self.model_dump(mode="json", exclude_none=True)


_QUALITY_FIELDS = (
    "precision",
    "recall",
    "f1_score",
    "exact_match_rate",
    "hamming_loss",
    "false_negative_rate",
)
_SAFETY_FIELDS = (
    "hallucination_rate",
    "over_prediction_rate",
    "abstention_accuracy",
    "abstention_cases",
)
_EFFICIENCY_FIELDS = (
    "latency_ms",
    "ttft_ms",
    "itps",
    "otps",
    "oet_ms",
    "managed_heap_mb",
    "native_heap_mb",
    "pss_mb",
    "efficiency_sample_count",
)

PARTITION_FIELDS: dict[Partition, tuple[str, ...]] = {
    Partition.QUALITY: _QUALITY_FIELDS,
    Partition.SAFETY: _SAFETY_FIELDS,
    Partition.EFFICIENCY: _EFFICIENCY_FIELDS,
}


class ModelBenchmark(BaseModel):
    """Aggregated statistics for one model, recomputed in full on every run.

    Rates and accuracies are percentages; quality averages are fractions.
    Memory averages are in MB.
    """

    model_name: str = Field(min_length=1)

    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    exact_match_rate: float = 0.0
    hamming_loss: float = 0.0
    false_negative_rate: float = 0.0

    hallucination_rate: float = 0.0
    over_prediction_rate: float = 0.0
    abstention_accuracy: float = 0.0
    abstention_cases: int = 0

    latency_ms: float = 0.0
    ttft_ms: float = 0.0
    itps: float = 0.0
    otps: float = 0.0
    oet_ms: float = 0.0
    managed_heap_mb: float = 0.0
    native_heap_mb: float = 0.0
    pss_mb: float = 0.0
    efficiency_sample_count: int = 0

    sample_count: int = 0
    last_updated: datetime | None = None

    def to_partitions(self) -> dict[Partition, dict[str, Any]]:
        """Split into the three partition documents, each keyed by model name."""
        data = self.model_dump(mode="json")
        common = {
            "model_name": self.model_name,
            "sample_count": self.sample_count,
            "last_updated": data["last_updated"],
            "schema_version": SCHEMA_VERSION,
        }
        return {
            partition: {**common, **{name: data[name] for name in fields}}
            for partition, fields in PARTITION_FIELDS.items()
        }
