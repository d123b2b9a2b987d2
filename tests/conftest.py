"""Shared fixtures for the allergen_eval test suite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from allergen_eval.dataset import FoodItem
from allergen_eval.records import EfficiencySnapshot, PredictionRecord
from allergen_eval.repository import BenchmarkRepository
from allergen_eval.store import InMemoryDocumentStore

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def food_items() -> list[FoodItem]:
    """A handful of food items with mapped ground truth."""
    return [
        FoodItem(
            id="1",
            name="Butter Cookies",
            ingredients="wheat flour, butter, sugar, eggs",
            allergens="Wheat, Milk, Egg",
            allergens_mapped="wheat, milk, egg",
        ),
        FoodItem(
            id="2",
            name="Plain Rice",
            ingredients="rice, water, salt",
            allergens="",
            allergens_mapped="",
        ),
        FoodItem(
            id="3",
            name="Shrimp Noodles",
            ingredients="noodles (wheat), shrimp, soy sauce",
            allergens="Crustaceans, Gluten, Soybeans",
            allergens_mapped="shellfish, wheat, soy",
        ),
    ]


def make_record(
    ground_truth: str,
    predicted: str,
    model_name: str = "model-a",
    minutes: int = 0,
    efficiency: EfficiencySnapshot | None = None,
    item_id: str = "1",
) -> PredictionRecord:
    """Build a scored record with a deterministic timestamp."""
    item = FoodItem(
        id=item_id,
        name=f"item {item_id}",
        ingredients="",
        allergens=ground_truth,
        allergens_mapped=ground_truth,
    )
    return PredictionRecord.evaluate(
        item,
        model_name,
        predicted,
        efficiency=efficiency,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def repository(store: InMemoryDocumentStore) -> BenchmarkRepository:
    return BenchmarkRepository(store)


@pytest.fixture
def record_factory():
    """Expose ``make_record`` to tests."""
    return make_record
