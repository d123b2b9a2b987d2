"""Streamlit dashboard for the allergen extraction benchmark.

Select a dataset and a model, run single or batch predictions, and browse
the merged benchmark tables and the prediction history.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pandas as pd
import streamlit as st

from allergen_eval.dataset import FoodItem
from allergen_eval.evaluator import (
    AllergenEvaluator,
    EvaluationConfig,
    ModelConfig,
    configure_logging,
)
from allergen_eval.inference import ModelNotFoundError
from allergen_eval.records import PredictionRecord
from allergen_eval.report_generator import (
    EFFICIENCY_COLUMNS,
    QUALITY_COLUMNS,
    SAFETY_COLUMNS,
    ReportGenerator,
    format_value,
)

CONFIG_PATH = Path(__file__).parent.parent / "configs" / "models.yaml"

DEFAULT_MODELS = [
    "qwen2.5-1.5b-instruct-q4_k_m.gguf",
    "qwen2.5-3b-instruct-q4_k_m.gguf",
    "Llama-3.2-3B-Instruct-Q4_K_M.gguf",
    "Llama-3.2-1B-Instruct-Q4_K_M.gguf",
    "Phi-3.5-mini-instruct-Q4_K_M.gguf",
    "Phi-3-mini-4k-instruct-q4.gguf",
    "Vikhr-Gemma-2B-instruct-Q4_K_M.gguf",
]


def get_evaluator() -> AllergenEvaluator:
    """Build the evaluator once per session from YAML or fall back to defaults."""
    if "evaluator" not in st.session_state:
        if CONFIG_PATH.exists():
            evaluator = AllergenEvaluator.from_yaml(CONFIG_PATH)
        else:
            config = EvaluationConfig(
                models=[ModelConfig(name=name, filename=name) for name in DEFAULT_MODELS]
            )
            evaluator = AllergenEvaluator(config=config)
        configure_logging(evaluator.config.logging.level)
        st.session_state["evaluator"] = evaluator
    return st.session_state["evaluator"]


async def _predict_and_save(
    evaluator: AllergenEvaluator, item: FoodItem, model: ModelConfig
) -> PredictionRecord:
    """Predict one item and wait for its background save.

    Each Streamlit action runs in its own ``asyncio.run`` loop, which cancels
    any task still pending when it closes. ``predict_item`` saves in a
    detached task, so this caller drains before returning.
    """
    record = await evaluator.predict_item(item, model)
    await evaluator.drain()
    return record


def _benchmark_table(benchmarks: list[dict], columns: tuple) -> pd.DataFrame:
    rows = []
    for entry in benchmarks:
        row = {"Model": entry.get("model_name")}
        row.update({title: format_value(entry, key, fmt) for key, title, fmt in columns})
        rows.append(row)
    return pd.DataFrame(rows)


def main() -> None:
    """Run the Streamlit dashboard application."""
    st.set_page_config(
        page_title="Allergen Benchmark",
        page_icon="::bar_chart::",
        layout="wide",
    )

    st.title("Allergen Extraction Benchmark")
    st.markdown("Compare on-device models on allergen label quality, safety and efficiency.")

    evaluator = get_evaluator()

    st.sidebar.header("Configuration")
    try:
        datasets = evaluator.load_datasets()
    except FileNotFoundError:
        st.sidebar.error(f"Dataset not found: {evaluator.config.evaluation.dataset_path}")
        datasets = []

    model_names = [m.name for m in evaluator.config.models]
    selected_model = st.sidebar.selectbox("Model", options=model_names)
    selected_dataset = st.sidebar.selectbox(
        "Dataset",
        options=datasets,
        format_func=lambda d: f"{d.name} ({d.description})",
    )

    if selected_model and selected_dataset is not None:
        model = evaluator.get_model(selected_model)
        items = selected_dataset.food_items

        item = st.sidebar.selectbox("Food item", options=items, format_func=lambda i: i.name)
        if st.sidebar.button("Run Single Prediction") and item is not None:
            try:
                record = asyncio.run(_predict_and_save(evaluator, item, model))
            except ModelNotFoundError as e:
                st.error(str(e))
            else:
                st.success(f"Predicted: {record.predicted_text} (expected {record.ground_truth})")

        if st.sidebar.button("Run Batch", type="primary"):
            bar = st.progress(0.0)
            with st.spinner(f"Running {len(items)} items..."):
                outcome = asyncio.run(
                    evaluator.predict_batch(
                        items, model, progress=lambda done, total: bar.progress(done / total)
                    )
                )
            st.info(outcome.summary())

    benchmarks = asyncio.run(evaluator.repository.list_benchmarks())
    history = asyncio.run(evaluator.repository.get_history())
    generator = ReportGenerator()

    tab1, tab2, tab3, tab4, tab5 = st.tabs(
        ["Quality", "Safety", "Efficiency", "History", "Report"]
    )

    with tab1:
        st.header("Quality")
        st.dataframe(
            _benchmark_table(benchmarks, QUALITY_COLUMNS),
            use_container_width=True,
            hide_index=True,
        )

    with tab2:
        st.header("Safety")
        st.dataframe(
            _benchmark_table(benchmarks, SAFETY_COLUMNS),
            use_container_width=True,
            hide_index=True,
        )

    with tab3:
        st.header("Efficiency")
        st.dataframe(
            _benchmark_table(benchmarks, EFFICIENCY_COLUMNS),
            use_container_width=True,
            hide_index=True,
        )
        st.download_button(
            "Download Benchmarks CSV",
            data=generator.benchmarks_frame(benchmarks).to_csv(index=False),
            file_name="benchmarks.csv",
            mime="text/csv",
        )

    with tab4:
        st.header("Prediction History")
        history_df = generator.history_frame(history)
        st.dataframe(history_df, use_container_width=True, hide_index=True)
        st.download_button(
            "Download History CSV",
            data=history_df.to_csv(index=False),
            file_name="history.csv",
            mime="text/csv",
        )

    with tab5:
        st.header("Generated Report")
        md_report = generator.generate_markdown(benchmarks, history or None)
        st.markdown(md_report)
        st.download_button(
            "Download Markdown Report",
            data=md_report,
            file_name="benchmark_report.md",
            mime="text/markdown",
        )


if __name__ == "__main__":
    main()
