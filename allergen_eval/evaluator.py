"""Evaluation engine for on-device allergen extraction models.

Provides the AllergenEvaluator class that runs single predictions and
sequential batches, scores them, and persists history and benchmarks. A
simulated backend allows running without any model files.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from allergen_eval.aggregator import BenchmarkAccumulator
from allergen_eval.dataset import Dataset, FoodItem, load_food_items, split_datasets
from allergen_eval.inference import (
    InferenceBackend,
    ModelNotFoundError,
    ProgressCallback,
    SimulatedBackend,
    Stopwatch,
    parse_raw_output,
    read_memory,
)
from allergen_eval.prompts import PromptFormat, build_prompt
from allergen_eval.records import EfficiencySnapshot, ModelBenchmark, PredictionRecord
from allergen_eval.repository import BenchmarkRepository, CollectionNames
from allergen_eval.store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

BatchProgress = Callable[[int, int], None]


class ModelConfig(BaseModel):
    """Configuration for a single on-device model.

    Attributes:
        name: Model name, used as the benchmark key.
        filename: Model file name inside the models directory.
        prompt_format: Chat template override. Detected from the file name
            when omitted.
        description: Optional description of the model.
    """

    name: str = Field(min_length=1)
    filename: str = ""
    prompt_format: PromptFormat | None = None
    description: str = ""

    @property
    def model_file(self) -> str:
        return self.filename or self.name


class EvaluationSettings(BaseModel):
    """Run settings.

    Attributes:
        models_dir: Directory holding the model files.
        dataset_path: Preprocessed food CSV.
        num_datasets: Number of contiguous evaluation sets.
        simulate: Use the simulated backend instead of a real engine.
    """

    models_dir: Path = Path("models")
    dataset_path: Path = Path("data/foodpreprocessed.csv")
    num_datasets: int = Field(20, gt=0)
    simulate: bool = True


class StoreConfig(BaseModel):
    """Document store settings.

    Attributes:
        backend: ``memory`` or ``json``.
        directory: Root directory of the json backend.
        collections: Collection names for history and partitions.
    """

    backend: str = "memory"
    directory: Path = Path("benchmark_store")
    collections: CollectionNames = Field(default_factory=CollectionNames)


class LoggingConfig(BaseModel):
    level: str = "INFO"


class EvaluationConfig(BaseModel):
    """Top-level configuration loaded from YAML."""

    models: list[ModelConfig] = Field(default_factory=list)
    evaluation: EvaluationSettings = Field(default_factory=EvaluationSettings)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path) -> EvaluationConfig:
    """Load an evaluation configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated EvaluationConfig.

    Raises:
        ValueError: If the file has no ``models`` section.
    """
    path = Path(config_path)
    with path.open() as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict) or "models" not in raw:
        raise ValueError(f"Configuration {path} has no 'models' section.")
    return EvaluationConfig.model_validate(raw)


def build_store(config: StoreConfig) -> DocumentStore:
    """Create the document store selected by the configuration.

    Raises:
        ValueError: If the backend is unknown.
    """
    backend = config.backend.lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "json":
        return JsonFileDocumentStore(config.directory)
    raise ValueError(f"Unknown store backend: {config.backend}")


def configure_logging(level: str | int = "INFO") -> None:
    """Install a timestamped root handler."""
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


@dataclass
class BatchOutcome:
    """Result of one batch run.

    Attributes:
        model_name: Name of the evaluated model.
        records: Records that were evaluated successfully.
        failure_count: Items whose inference failed.
        history_saved: Records written to the history.
        history_failed: Records that could not be written.
        benchmark: Benchmark computed from this batch, if any record succeeded.
        benchmark_saved: Whether all three partitions were written.
    """

    model_name: str
    records: list[PredictionRecord] = field(default_factory=list)
    failure_count: int = 0
    history_saved: int = 0
    history_failed: int = 0
    benchmark: ModelBenchmark | None = None
    benchmark_saved: bool = False

    @property
    def success_count(self) -> int:
        return len(self.records)

    def summary(self) -> str:
        """Short user-facing summary of the run."""
        lines = [
            f"Batch for {self.model_name}: {self.success_count} succeeded, "
            f"{self.failure_count} failed.",
            f"History: {self.history_saved} saved, {self.history_failed} failed.",
        ]
        if self.benchmark is None:
            lines.append("Benchmark: nothing to aggregate.")
        elif self.benchmark_saved:
            lines.append("Benchmark: saved.")
        else:
            lines.append("Benchmark: save failed.")
        return "\n".join(lines)


class AllergenEvaluator:
    """Runs allergen extraction models over food items and records results.

    Single predictions return immediately and persist in the background.
    Batches run items strictly one after another, fold each record into a
    running accumulator and persist once at the end.

    Args:
        config: EvaluationConfig with model, run and store settings.
        backend: Inference backend. Defaults to the simulated backend when
            simulation is enabled.
        repository: Repository to persist to. Built from the store settings
            when omitted.

    Raises:
        ValueError: If simulation is off and no backend is given.
    """

    def __init__(
        self,
        config: EvaluationConfig | None = None,
        backend: InferenceBackend | None = None,
        repository: BenchmarkRepository | None = None,
    ) -> None:
        self.config = config or EvaluationConfig()
        if backend is None:
            if not self.config.evaluation.simulate:
                raise ValueError("An inference backend is required when simulate is off.")
            backend = SimulatedBackend()
        self.backend = backend
        self.repository = repository or BenchmarkRepository(
            build_store(self.config.store), self.config.store.collections
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_yaml(
        cls, config_path: str | Path, backend: InferenceBackend | None = None
    ) -> AllergenEvaluator:
        """Create an evaluator from a YAML configuration file."""
        return cls(config=load_config(config_path), backend=backend)

    def get_model(self, name: str) -> ModelConfig:
        """Look up a configured model by name.

        Raises:
            ValueError: If no model with that name is configured.
        """
        for model in self.config.models:
            if model.name == name:
                return model
        raise ValueError(f"Unknown model: {name}")

    def model_path(self, model: ModelConfig) -> Path:
        return self.config.evaluation.models_dir / model.model_file

    def load_datasets(self) -> list[Dataset]:
        """Load the configured CSV and split it into evaluation sets."""
        items = load_food_items(self.config.evaluation.dataset_path)
        return split_datasets(items, self.config.evaluation.num_datasets)

    async def evaluate_item(
        self,
        item: FoodItem,
        model: ModelConfig,
        report_progress: ProgressCallback | None = None,
    ) -> PredictionRecord:
        """Run inference for one item and score it, without persisting.

        Raises:
            ModelNotFoundError: If the backend needs a model file that is missing.
        """
        path = self.model_path(model)
        if self.backend.requires_model_file and not path.is_file():
            raise ModelNotFoundError(f"Model file not found: {path}")

        prompt = build_prompt(item.ingredients, model.model_file, model.prompt_format)
        before = read_memory()
        stopwatch = Stopwatch()
        raw = await asyncio.to_thread(self.backend.infer, prompt, path, report_progress)
        latency_ms = stopwatch.elapsed_ms()
        after = read_memory()

        predicted_text, timings = parse_raw_output(raw)
        efficiency = EfficiencySnapshot(
            latency_ms=latency_ms,
            ttft_ms=timings.ttft_ms,
            itps=timings.itps,
            otps=timings.otps,
            oet_ms=timings.oet_ms,
            managed_heap_kb=after.managed_heap_kb - before.managed_heap_kb,
            native_heap_kb=after.native_heap_kb - before.native_heap_kb,
            pss_kb=after.pss_kb - before.pss_kb,
        )
        return PredictionRecord.evaluate(
            item,
            model.name,
            predicted_text,
            efficiency=efficiency,
            created_at=datetime.now(UTC),
        )

    async def predict_item(
        self,
        item: FoodItem,
        model: ModelConfig,
        report_progress: ProgressCallback | None = None,
    ) -> PredictionRecord:
        """Evaluate one item and persist it in the background.

        The record is returned as soon as it is scored. Saving it and
        refreshing the model's benchmark happen in a detached task; two such
        tasks for the same model may finish in either order. Use ``drain`` to
        wait for them.
        """
        record = await self.evaluate_item(item, model, report_progress)
        self._spawn(self.repository.save_prediction_and_refresh(record))
        return record

    async def predict_batch(
        self,
        items: Sequence[FoodItem],
        model: ModelConfig,
        progress: BatchProgress | None = None,
    ) -> BatchOutcome:
        """Evaluate items one by one, then save history and the benchmark.

        A failing item is logged and counted; the batch continues. The
        benchmark covers this batch's records only.

        Args:
            items: Food items to evaluate, in order.
            model: Model to run.
            progress: Called with (completed, total) after each item.

        Returns:
            BatchOutcome with the records and persistence results.
        """
        outcome = BatchOutcome(model_name=model.name)
        accumulator = BenchmarkAccumulator()
        total = len(items)

        for index, item in enumerate(items, start=1):
            try:
                record = await self.evaluate_item(item, model)
            except Exception:
                logger.exception("Prediction failed for item %s with %s", item.id, model.name)
                outcome.failure_count += 1
            else:
                outcome.records.append(record)
                accumulator = accumulator.add(record)
            if progress is not None:
                progress(index, total)

        outcome.history_saved, outcome.history_failed = await self.repository.save_records(
            outcome.records
        )
        if outcome.records:
            outcome.benchmark = accumulator.to_benchmark(model.name)
            outcome.benchmark_saved = await self.repository.save_benchmark(outcome.benchmark)

        logger.info(
            "Batch for %s finished: %d succeeded, %d failed",
            model.name,
            outcome.success_count,
            outcome.failure_count,
        )
        return outcome

    async def drain(self) -> None:
        """Wait for all background saves to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_saves(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
