"""Allergen Eval - on-device LLM allergen extraction benchmark.

Score model predictions of food allergen labels and aggregate them into
quality, safety and efficiency benchmarks per model.
"""

__version__ = "1.0.0"
