"""Persistence of prediction history and partitioned benchmarks.

A model's benchmark is written as three keyed documents, one per partition,
and read back by joining the partitions on the model name. The join only
happens in ``merge_partitions``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from allergen_eval.aggregator import aggregate
from allergen_eval.records import ModelBenchmark, Partition, PredictionRecord
from allergen_eval.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionNames:
    """Names of the collections used by the repository."""

    predictions: str = "predictions"
    quality: str = "benchmarks_quality"
    safety: str = "benchmarks_safety"
    efficiency: str = "benchmarks_efficiency"

    def for_partition(self, partition: Partition) -> str:
        return {
            Partition.QUALITY: self.quality,
            Partition.SAFETY: self.safety,
            Partition.EFFICIENCY: self.efficiency,
        }[partition]


def merge_partitions(
    quality: dict[str, dict[str, Any]],
    safety: dict[str, dict[str, Any]],
    efficiency: dict[str, dict[str, Any]],
) -> list[dict[str, Any]]:
    """Join the three partitions into one flat map per model.

    The quality partition decides which models exist. A model with no safety
    or efficiency document simply lacks those fields; consumers treat absent
    fields as not available.

    Args:
        quality: Quality documents keyed by model name.
        safety: Safety documents keyed by model name.
        efficiency: Efficiency documents keyed by model name.

    Returns:
        One merged map per model, in quality partition order.
    """
    merged = []
    for model_name, quality_doc in quality.items():
        entry = dict(quality_doc)
        entry.update(safety.get(model_name, {}))
        entry.update(efficiency.get(model_name, {}))
        entry.setdefault("model_name", model_name)
        merged.append(entry)
    return merged


class BenchmarkRepository:
    """Reads and writes prediction records and model benchmarks.

    Write operations report failure through their return value and log the
    cause; they never raise into the caller.

    Args:
        store: Backing document store.
        collections: Collection names to use.
    """

    def __init__(
        self, store: DocumentStore, collections: CollectionNames | None = None
    ) -> None:
        self.store = store
        self.collections = collections or CollectionNames()

    async def append_record(self, record: PredictionRecord) -> bool:
        """Append one record to the prediction history."""
        try:
            await self.store.add(self.collections.predictions, record.to_document())
        except Exception:
            logger.exception(
                "Failed to save prediction for %s/%s", record.model_name, record.item_id
            )
            return False
        return True

    async def save_records(self, records: Iterable[PredictionRecord]) -> tuple[int, int]:
        """Append records one by one.

        Returns:
            Tuple of (saved, failed) counts.
        """
        saved = failed = 0
        for record in records:
            if await self.append_record(record):
                saved += 1
            else:
                failed += 1
        logger.info("History save: %d saved, %d failed", saved, failed)
        return saved, failed

    async def get_history(self, model_name: str | None = None) -> list[PredictionRecord]:
        """Return decoded history records ordered by creation time.

        Args:
            model_name: Restrict to one model. None returns every model.
        """
        collection = self.collections.predictions
        if model_name is None:
            documents = list((await self.store.list(collection)).values())
        else:
            current, legacy = await asyncio.gather(
                self.store.query(collection, "model_name", model_name),
                self.store.query(collection, "modelName", model_name),
            )
            documents = current + [doc for doc in legacy if "model_name" not in doc]
        records = [PredictionRecord.from_document(doc) for doc in documents]
        # Undated records sort first.
        return sorted(records, key=lambda r: (r.created_at is not None, r.created_at or 0))

    async def save_benchmark(self, benchmark: ModelBenchmark) -> bool:
        """Upsert the three partition documents of a benchmark concurrently.

        Each document fully replaces the previous one for the model. The writes
        are not transactional; when only some of them succeed the partitions
        stay inconsistent until the next successful save.

        Returns:
            True only if all three writes succeeded.
        """
        documents = benchmark.to_partitions()
        partitions = list(documents)
        results = await asyncio.gather(
            *(
                self.store.set(
                    self.collections.for_partition(partition),
                    benchmark.model_name,
                    documents[partition],
                )
                for partition in partitions
            ),
            return_exceptions=True,
        )

        failed = [
            p for p, r in zip(partitions, results, strict=True) if isinstance(r, BaseException)
        ]
        if not failed:
            logger.info(
                "Saved benchmark for %s (%d samples)",
                benchmark.model_name,
                benchmark.sample_count,
            )
            return True

        written = [p for p in partitions if p not in failed]
        for partition, result in zip(partitions, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to write %s partition for %s: %s",
                    partition,
                    benchmark.model_name,
                    result,
                )
        if written:
            logger.error(
                "Partial benchmark write for %s: written=%s failed=%s",
                benchmark.model_name,
                [str(p) for p in written],
                [str(p) for p in failed],
            )
        return False

    async def refresh_benchmark(self, model_name: str) -> bool:
        """Recompute a model's benchmark from its full history and save it.

        Returns:
            True if a benchmark was written. A model with no history is skipped.
        """
        try:
            history = await self.get_history(model_name)
        except Exception:
            logger.exception("Failed to read history for %s", model_name)
            return False

        if not history:
            logger.debug("No history for %s, skipping aggregation", model_name)
            return False

        benchmark = aggregate(model_name, history)
        logger.debug("Aggregated %d records for %s", len(history), model_name)
        return await self.save_benchmark(benchmark)

    async def save_prediction_and_refresh(self, record: PredictionRecord) -> bool:
        """Append a record, then refresh the benchmark of its model."""
        if not await self.append_record(record):
            return False
        return await self.refresh_benchmark(record.model_name)

    async def list_benchmarks(self) -> list[dict[str, Any]]:
        """Read all partitions and return the merged benchmark maps.

        A failed read is logged and yields an empty list.
        """
        try:
            quality, safety, efficiency = await asyncio.gather(
                self.store.list(self.collections.quality),
                self.store.list(self.collections.safety),
                self.store.list(self.collections.efficiency),
            )
        except Exception:
            logger.exception("Failed to read benchmarks")
            return []
        return merge_partitions(quality, safety, efficiency)
