from datetime import date
from pathlib import Path
from typing import Any, Iterable

import gspread
from google.oauth2.service_account import Credentials
from gspread.exceptions import WorksheetNotFound

from mealcycle import config
from mealcycle.planner import STATUS_OUT, PlanSlot, week_index_for
from mealcycle.recipes import RecipeCatalog
from mealcycle.shopping_list import ShoppingList


class SheetsError(Exception):
    """Raised when there's an error with Google Sheets operations."""
    pass


_HEADER_FORMAT = {
    "backgroundColor": {"red": 0.2, "green": 0.6, "blue": 0.8},
    "textFormat": {"bold": True, "foregroundColor": {"red": 1, "green": 1, "blue": 1}},
}


class SheetsWriter:
    """Handles writing plans and shopping lists to Google Sheets."""

    PLAN_SHEET = "Plan"
    SHOPPING_LIST_SHEET = "Shopping List"

    def __init__(self, credentials_file: str, spreadsheet_id: str):
        self.spreadsheet_id = spreadsheet_id
        self.credentials_file = Path(credentials_file)

        if not self.credentials_file.exists():
            raise SheetsError(
                f"Credentials file not found: {credentials_file}. "
                "Please follow the Google Sheets setup instructions."
            )

        scopes = [
            'https://www.googleapis.com/auth/spreadsheets',
            'https://www.googleapis.com/auth/drive'
        ]

        creds = Credentials.from_service_account_file(
            str(self.credentials_file),
            scopes=scopes
        )

        self.client = gspread.authorize(creds)
        self.spreadsheet = self.client.open_by_key(spreadsheet_id)

    def _get_or_create_worksheet(self, title: str, rows: int = 100, cols: int = 10):
        """Get a worksheet by title, creating it if it doesn't exist."""
        try:
            return self.spreadsheet.worksheet(title)
        except WorksheetNotFound:
            return self.spreadsheet.add_worksheet(title=title, rows=rows, cols=cols)

    def write_plan(
        self,
        slots: Iterable[PlanSlot],
        catalog: RecipeCatalog,
        start_monday: date,
        default_servings: int = config.DEFAULT_SERVINGS,
    ) -> None:
        """Write every slot of the plan, one row per slot."""
        worksheet = self._get_or_create_worksheet(self.PLAN_SHEET, rows=60)
        worksheet.clear()

        headers = ["Week", "Date", "Slot", "Status", "Recipe", "Servings", "Kcal / serving"]
        rows = [headers]
        for slot in slots:
            recipe = catalog.get(slot.recipe_id)
            if slot.status == STATUS_OUT:
                recipe_name = "Out"
            else:
                recipe_name = recipe.name if recipe else "No recipe assigned"
            rows.append([
                week_index_for(start_monday, slot.slot_date) + 1,
                slot.slot_date.isoformat(),
                slot.label,
                slot.status,
                recipe_name,
                slot.servings(default_servings),
                f"{recipe.kcal:.0f}" if recipe else "",
            ])

        worksheet.update(rows, "A1")
        worksheet.format("A1:G1", _HEADER_FORMAT)

    def write_shopping_list(self, shopping_list: ShoppingList) -> None:
        """Write the shopping list, grouped by category, followed by manual extras."""
        worksheet = self._get_or_create_worksheet(self.SHOPPING_LIST_SHEET)
        worksheet.clear()

        rows = [["Category", "Item", "Quantity", "Unit"]]
        items_by_category = shopping_list.items_by_category

        for category in sorted(items_by_category.keys()):
            rows.append([category.upper(), "", "", ""])
            for item in items_by_category[category]:
                rows.append(["", item.item, f"{item.quantity:.2f}", item.unit])
            rows.append([])

        if shopping_list.manual_items:
            rows.append(["EXTRAS", "", "", ""])
            for extra in shopping_list.manual_items:
                quantity = f"{extra.quantity:.2f}" if extra.quantity is not None else ""
                rows.append(["", extra.item_name, quantity, extra.unit or ""])

        worksheet.update(rows, "A1")
        worksheet.format("A1:D1", _HEADER_FORMAT)

    def write_all(
        self,
        slots: Iterable[PlanSlot],
        catalog: RecipeCatalog,
        start_monday: date,
        shopping_list: ShoppingList,
        default_servings: int = config.DEFAULT_SERVINGS,
    ) -> dict[str, Any]:
        """Write both the plan and the shopping list to the spreadsheet.

        Returns a dict with success status and the spreadsheet URL.
        """
        try:
            self.write_plan(slots, catalog, start_monday, default_servings)
            self.write_shopping_list(shopping_list)

            return {
                "success": True,
                "url": f"https://docs.google.com/spreadsheets/d/{self.spreadsheet_id}",
                "message": "Successfully wrote plan and shopping list to Google Sheets"
            }
        except Exception as e:
            raise SheetsError(f"Failed to write to Google Sheets: {e}") from e
