"""Inference backends and the raw output contract.

A backend returns a single string of the form
``TTFT_MS=<n>;ITPS=<n>;OTPS=<n>;OET_MS=<n>|<generated text>``. The metadata
part is optional; when the separator is missing the whole string is the
generated text.
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import tracemalloc
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from allergen_eval.labels import LABEL_ORDER, extract_labels, format_labels
from allergen_eval.prompts import DERIVED_INGREDIENTS, extract_ingredients

logger = logging.getLogger(__name__)

OUTPUT_SEPARATOR = "|"

ProgressCallback = Callable[[str], None]


class ModelNotFoundError(FileNotFoundError):
    """Raised when a model file is absent from the models directory."""


@dataclass(frozen=True)
class InferenceTimings:
    """Timing fields reported by the inference engine.

    Attributes:
        ttft_ms: Time to first token in milliseconds.
        itps: Input (prompt) tokens per second.
        otps: Output tokens per second.
        oet_ms: Output evaluation time in milliseconds.
    """

    ttft_ms: int = 0
    itps: int = 0
    otps: int = 0
    oet_ms: int = 0


def _parse_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return 0


def parse_raw_output(raw: str) -> tuple[str, InferenceTimings]:
    """Split raw engine output into the canonical prediction and its timings.

    The generated text is reduced to the allergen vocabulary and formatted
    canonically, so ``"Milk and wheat."`` becomes ``"milk, wheat"`` and text
    with no allergens becomes ``"EMPTY"``.
    """
    meta, sep, text = raw.partition(OUTPUT_SEPARATOR)
    if not sep:
        meta, text = "", raw

    fields: dict[str, int] = {}
    for part in meta.split(";"):
        key, eq, value = part.partition("=")
        if eq:
            fields[key.strip().upper()] = _parse_int(value)

    timings = InferenceTimings(
        ttft_ms=fields.get("TTFT_MS", 0),
        itps=fields.get("ITPS", 0),
        otps=fields.get("OTPS", 0),
        oet_ms=fields.get("OET_MS", 0),
    )
    return format_labels(extract_labels(text)), timings


class InferenceBackend(ABC):
    """Runs a prompt against a local model file.

    ``infer`` is blocking; the evaluator calls it from a worker thread.
    """

    requires_model_file: bool = True

    @abstractmethod
    def infer(
        self,
        prompt: str,
        model_path: Path,
        report_progress: ProgressCallback | None = None,
    ) -> str:
        """Generate a completion and return it in the raw output format."""


def simulated_quality(model_name: str) -> float:
    """Deterministic quality factor in [0.60, 0.95) for a model name."""
    seed = int(hashlib.md5(model_name.encode()).hexdigest()[:8], 16)
    return 0.60 + (seed % 35) / 100.0


class SimulatedBackend(InferenceBackend):
    """Deterministic stand-in for a real inference engine.

    Allergens are detected by keyword from the ingredient list, then perturbed
    by a quality factor so that different models score differently. The same
    model and prompt always produce the same output.

    Args:
        quality: Probability of keeping each correct label; one minus it is
            the chance of adding a spurious one. None derives a fixed factor
            from each model file name.
        delay: Seconds to sleep per call, to mimic generation time.
    """

    requires_model_file = False

    def __init__(self, quality: float | None = None, delay: float = 0.0) -> None:
        if quality is not None and not 0.0 <= quality <= 1.0:
            raise ValueError("quality must be between 0 and 1.")
        self.quality = quality
        self.delay = delay

    def infer(
        self,
        prompt: str,
        model_path: Path,
        report_progress: ProgressCallback | None = None,
    ) -> str:
        quality = self.quality
        if quality is None:
            quality = simulated_quality(model_path.name)
        seed = int(hashlib.md5(f"{model_path.name}:{prompt}".encode()).hexdigest()[:8], 16)
        rng = random.Random(seed)
        ingredients = extract_ingredients(prompt).lower()

        detected = [
            label
            for label in LABEL_ORDER
            if label in ingredients
            or any(term in ingredients for term in DERIVED_INGREDIENTS[label])
        ]
        predicted = [label for label in detected if rng.random() < quality]
        if rng.random() > quality:
            extra = [label for label in LABEL_ORDER if label not in detected]
            if extra:
                predicted.append(rng.choice(extra))

        if report_progress is not None:
            report_progress("generating")
        if self.delay:
            time.sleep(self.delay)

        text = ", ".join(label for label in LABEL_ORDER if label in predicted) or "EMPTY"
        ttft = rng.randint(80, 400)
        itps = rng.randint(20, 120)
        otps = rng.randint(5, 30)
        oet = rng.randint(200, 2000)
        return f"TTFT_MS={ttft};ITPS={itps};OTPS={otps};OET_MS={oet}{OUTPUT_SEPARATOR}{text}"


@dataclass(frozen=True)
class MemorySnapshot:
    """Process memory readings in KB."""

    managed_heap_kb: float = 0.0
    native_heap_kb: float = 0.0
    pss_kb: float = 0.0


def _read_status_kb(path: Path, key: str) -> float:
    try:
        with open(path) as f:
            for line in f:
                if line.startswith(f"{key}:"):
                    return float(line.split()[1])
    except OSError as e:
        logger.debug("Cannot read %s: %s", path, e)
    return 0.0


def read_memory() -> MemorySnapshot:
    """Sample process memory.

    The managed heap is what ``tracemalloc`` traces (zero when tracing is
    off). Native heap and PSS come from ``/proc/self`` and read as zero on
    platforms without it.
    """
    managed = tracemalloc.get_traced_memory()[0] / 1024.0 if tracemalloc.is_tracing() else 0.0
    proc = Path("/proc/self")
    return MemorySnapshot(
        managed_heap_kb=managed,
        native_heap_kb=_read_status_kb(proc / "status", "VmRSS"),
        pss_kb=_read_status_kb(proc / "smaps_rollup", "Pss"),
    )


class Stopwatch:
    """Wall-clock timer in milliseconds."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0
