from datetime import date, timedelta
from unittest.mock import Mock, patch

import pytest

from mealcycle.planner import STATUS_OUT, PlanSlot
from mealcycle.recipes import RecipeCatalog
from mealcycle.sheets import SheetsError, SheetsWriter
from mealcycle.shopping_list import ManualItem, ShoppingList, ShoppingListItem
from tests.conftest import create_test_recipe

START = date(2024, 1, 1)


@pytest.fixture
def sample_catalog():
    return RecipeCatalog([create_test_recipe("lentejas", "Lentejas", kcal=520)])


@pytest.fixture
def sample_slots():
    return [
        PlanSlot(START, "mon_dinner", "Lun cena", "pool", "recipe", "lentejas"),
        PlanSlot(START + timedelta(days=1), "tue_dinner", "Mar cena", "pool", STATUS_OUT),
        PlanSlot(START + timedelta(days=8), "tue_dinner", "Mar cena", "pool", "recipe", "lentejas", 5),
    ]


@pytest.fixture
def sample_shopping_list():
    return ShoppingList(
        week_monday=START,
        items=[
            ShoppingListItem(item="arroz", quantity=800, unit="g", category="Ingrediente"),
            ShoppingListItem(item="pollo", quantity=1, unit="kg", category="Carne"),
        ],
        manual_items=[ManualItem(id="m-1", shopping_week_id="w-1", item_name="Servilletas")],
    )


@pytest.fixture
def mock_spreadsheet():
    with patch('mealcycle.sheets.Credentials') as mock_creds, \
            patch('mealcycle.sheets.gspread') as mock_gspread, \
            patch('mealcycle.sheets.Path.exists', return_value=True):
        mock_creds.from_service_account_file.return_value = Mock()
        mock_client = Mock()
        mock_gspread.authorize.return_value = mock_client
        spreadsheet = Mock()
        mock_client.open_by_key.return_value = spreadsheet
        yield spreadsheet


class TestSheetsWriter:
    def test_sheets_writer_initialization(self, mock_spreadsheet):
        writer = SheetsWriter(credentials_file="test_creds.json", spreadsheet_id="test-sheet-id")

        assert writer.spreadsheet_id == "test-sheet-id"
        assert writer.spreadsheet is mock_spreadsheet

    def test_sheets_writer_raises_error_if_credentials_missing(self):
        with patch('mealcycle.sheets.Path.exists', return_value=False):
            with pytest.raises(SheetsError) as exc_info:
                SheetsWriter(credentials_file="nonexistent.json", spreadsheet_id="test-id")
            assert "credentials" in str(exc_info.value).lower()

    def test_write_plan_rows(self, mock_spreadsheet, sample_slots, sample_catalog):
        worksheet = Mock()
        mock_spreadsheet.worksheet.return_value = worksheet

        writer = SheetsWriter(credentials_file="test_creds.json", spreadsheet_id="test-id")
        writer.write_plan(sample_slots, sample_catalog, START, default_servings=3)

        mock_spreadsheet.worksheet.assert_called_with("Plan")
        worksheet.clear.assert_called_once()
        rows = worksheet.update.call_args[0][0]
        assert rows[0][0] == "Week"
        assert rows[1] == [1, "2024-01-01", "Lun cena", "recipe", "Lentejas", 3, "520"]
        assert rows[2][4] == "Out"
        assert rows[3][0] == 2
        assert rows[3][5] == 5

    def test_write_shopping_list_rows(self, mock_spreadsheet, sample_shopping_list):
        worksheet = Mock()
        mock_spreadsheet.worksheet.return_value = worksheet

        writer = SheetsWriter(credentials_file="test_creds.json", spreadsheet_id="test-id")
        writer.write_shopping_list(sample_shopping_list)

        mock_spreadsheet.worksheet.assert_called_with("Shopping List")
        rows = worksheet.update.call_args[0][0]
        assert rows[1] == ["CARNE", "", "", ""]
        assert rows[2] == ["", "pollo", "1.00", "kg"]
        assert ["EXTRAS", "", "", ""] in rows
        assert rows[-1] == ["", "Servilletas", "", ""]

    def test_write_all_writes_both_sheets(
        self, mock_spreadsheet, sample_slots, sample_catalog, sample_shopping_list
    ):
        mock_spreadsheet.worksheet.return_value = Mock()

        writer = SheetsWriter(credentials_file="test_creds.json", spreadsheet_id="test-id")
        result = writer.write_all(sample_slots, sample_catalog, START, sample_shopping_list)

        assert mock_spreadsheet.worksheet.call_count == 2
        assert result["success"] is True
        assert result["url"].endswith("/test-id")

    def test_write_creates_worksheets_if_missing(self, mock_spreadsheet, sample_slots, sample_catalog):
        from gspread.exceptions import WorksheetNotFound
        mock_spreadsheet.worksheet.side_effect = [WorksheetNotFound("not found")]
        mock_spreadsheet.add_worksheet.return_value = Mock()

        writer = SheetsWriter(credentials_file="test_creds.json", spreadsheet_id="test-id")
        writer.write_plan(sample_slots, sample_catalog, START)

        mock_spreadsheet.add_worksheet.assert_called_once()

    def test_write_all_wraps_errors(self, mock_spreadsheet, sample_slots, sample_catalog, sample_shopping_list):
        worksheet = Mock()
        worksheet.update.side_effect = RuntimeError("quota exceeded")
        mock_spreadsheet.worksheet.return_value = worksheet

        writer = SheetsWriter(credentials_file="test_creds.json", spreadsheet_id="test-id")
        with pytest.raises(SheetsError) as exc_info:
            writer.write_all(sample_slots, sample_catalog, START, sample_shopping_list)
        assert "quota exceeded" in str(exc_info.value)
