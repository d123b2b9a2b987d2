"""Tests for the dataset module."""

from __future__ import annotations

from pathlib import Path

import pytest

from allergen_eval.dataset import FoodItem, load_food_items, split_datasets

CSV_TEXT = """id,name,link,ingredients,allergens,allergens_mapped
1,"Butter Cookies",http://x/1,"wheat flour, butter","Wheat, Milk","wheat, milk"
2,Plain Rice,http://x/2,"rice, water",,
3,"Tofu Bowl",http://x/3,"tofu, sesame oil",Soy,"soy, sesame"
"""


@pytest.fixture
def csv_path(tmp_path: Path) -> Path:
    path = tmp_path / "food.csv"
    path.write_text(CSV_TEXT)
    return path


class TestLoadFoodItems:
    """Tests for load_food_items function."""

    def test_loads_rows(self, csv_path: Path) -> None:
        items = load_food_items(csv_path)
        assert [i.id for i in items] == ["1", "2", "3"]
        assert items[0] == FoodItem(
            id="1",
            name="Butter Cookies",
            ingredients="wheat flour, butter",
            allergens="Wheat, Milk",
            link="http://x/1",
            allergens_mapped="wheat, milk",
        )

    def test_blank_allergens_are_empty_strings(self, csv_path: Path) -> None:
        rice = load_food_items(csv_path)[1]
        assert rice.allergens == ""
        assert rice.allergens_mapped == ""

    def test_missing_mapped_column(self, tmp_path: Path) -> None:
        path = tmp_path / "short.csv"
        path.write_text("id,name,link,ingredients,allergens\n1,Bread,l,flour,Wheat\n")
        items = load_food_items(path)
        assert len(items) == 1
        assert items[0].allergens_mapped == ""

    def test_rows_checked_individually(self, tmp_path: Path) -> None:
        """Overlong rows are truncated and short rows skipped without failing the load."""
        path = tmp_path / "ragged.csv"
        path.write_text(
            "id,name,link,ingredients,allergens,allergens_mapped\n"
            "1,Bread,l,flour,Wheat,wheat\n"
            "2,Cake,l,flour,Wheat,wheat,extra\n"
            "3,Rice,l,rice\n"
            "4,Tofu,l,tofu,Soy\n"
        )
        items = load_food_items(path)
        assert [i.id for i in items] == ["1", "2", "4"]
        assert items[1].name == "Cake"
        assert items[1].allergens == "Wheat"
        assert items[1].allergens_mapped == "wheat"
        assert items[2].allergens_mapped == ""

    def test_overlong_first_row(self, tmp_path: Path) -> None:
        path = tmp_path / "ragged.csv"
        path.write_text(
            "id,name,link,ingredients,allergens,allergens_mapped\n"
            "1,Bread,l,flour,Wheat,wheat,extra\n"
            "2,Cake,l,flour,Egg,egg\n"
        )
        items = load_food_items(path)
        assert [i.id for i in items] == ["1", "2"]
        assert items[0].allergens_mapped == "wheat"
        assert items[1].allergens == "Egg"

    def test_too_few_columns(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.csv"
        path.write_text("id,name\n1,Bread\n")
        assert load_food_items(path) == []


class TestSplitDatasets:
    """Tests for split_datasets function."""

    def _items(self, n: int) -> list[FoodItem]:
        return [FoodItem(id=str(i), name=f"item {i}", ingredients="") for i in range(n)]

    def test_last_set_takes_remainder(self) -> None:
        datasets = split_datasets(self._items(10), total_sets=3)
        assert [d.total_items for d in datasets] == [3, 3, 4]
        assert datasets[0].name == "Dataset 1"
        assert datasets[2].description == "4 items (7-10)"

    def test_contiguous_and_complete(self) -> None:
        items = self._items(45)
        datasets = split_datasets(items, total_sets=20)
        flattened = [item for d in datasets for item in d.food_items]
        assert flattened == items

    def test_invalid_total_sets(self) -> None:
        with pytest.raises(ValueError):
            split_datasets(self._items(3), total_sets=0)
