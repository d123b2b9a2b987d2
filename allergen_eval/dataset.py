"""Food item dataset loading.

Reads the preprocessed food CSV and splits it into fixed, contiguous
evaluation sets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_SETS = 20

CSV_COLUMNS = ("id", "name", "link", "ingredients", "allergens", "allergens_mapped")


@dataclass(frozen=True)
class FoodItem:
    """A single food item to evaluate.

    Attributes:
        id: Dataset identifier of the item.
        name: Human-readable product name.
        ingredients: Ingredient list sent to the model.
        allergens: Raw allergen text as published for the product.
        link: Source URL of the product.
        allergens_mapped: Allergen text canonicalized to the label vocabulary.
            This is the ground truth used for scoring.
    """

    id: str
    name: str
    ingredients: str
    allergens: str = ""
    link: str = ""
    allergens_mapped: str = ""


@dataclass
class Dataset:
    """A named, contiguous slice of the food item list."""

    id: int
    name: str
    description: str
    food_items: list[FoodItem] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.food_items)


def _truncate_fields(fields: list[str]) -> list[str]:
    return fields[: len(CSV_COLUMNS)]


def load_food_items(csv_path: str | Path) -> list[FoodItem]:
    """Load food items from the preprocessed CSV.

    Columns are read by position (id, name, link, ingredients, raw allergens,
    mapped allergens). Each row is checked on its own: fields past the sixth
    are dropped, rows with fewer than five fields are skipped and a missing
    mapped field reads as an empty string.

    Args:
        csv_path: Path to the CSV file. The first row is a header.

    Returns:
        Food items in file order.
    """
    frame = pd.read_csv(
        csv_path,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        engine="python",
        on_bad_lines=_truncate_fields,
    )
    # An overlong first row makes pandas take the leading field as the index.
    if not isinstance(frame.index, pd.RangeIndex):
        frame = frame.reset_index(names="_index").astype({"_index": str})
    if frame.shape[1] < 5:
        logger.warning("CSV %s has %d columns, expected at least 5", csv_path, frame.shape[1])
        return []

    frame = frame.iloc[:, : len(CSV_COLUMNS)]
    frame.columns = list(CSV_COLUMNS[: frame.shape[1]])
    frame = frame[frame["allergens"].notna()].copy()
    if "allergens_mapped" not in frame.columns:
        frame = frame.assign(allergens_mapped="")
    frame = frame.fillna("")
    for column in CSV_COLUMNS:
        frame[column] = frame[column].str.replace('"', "", regex=False).str.strip()

    items = [
        FoodItem(
            id=row.id,
            name=row.name,
            ingredients=row.ingredients,
            allergens=row.allergens,
            link=row.link,
            allergens_mapped=row.allergens_mapped,
        )
        for row in frame.itertuples(index=False)
    ]
    logger.info("Loaded %d food items from %s", len(items), csv_path)
    return items


def split_datasets(
    food_items: list[FoodItem], total_sets: int = DEFAULT_TOTAL_SETS
) -> list[Dataset]:
    """Split food items into contiguous datasets of equal size.

    The last dataset takes any remainder.

    Raises:
        ValueError: If total_sets is not positive.
    """
    if total_sets <= 0:
        raise ValueError("total_sets must be positive.")

    total_items = len(food_items)
    per_set = total_items // total_sets
    datasets: list[Dataset] = []
    for i in range(total_sets):
        start = i * per_set
        end = total_items if i == total_sets - 1 else start + per_set
        items = food_items[start:end]
        datasets.append(
            Dataset(
                id=i + 1,
                name=f"Dataset {i + 1}",
                description=f"{len(items)} items ({start + 1}-{end})",
                food_items=items,
            )
        )
    return datasets
