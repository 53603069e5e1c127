import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from mealcycle import config
from mealcycle.ingredient_normalizer import (
    UNCATEGORISED,
    is_spice_category,
    normalize_ingredient_name,
    normalize_unit,
    strip_accents,
)
from mealcycle.planner import PlanSlot, slots_in_week, week_monday_for
from mealcycle.recipes import RecipeCatalog

logger = logging.getLogger(__name__)


class ShoppingValidationError(ValueError):
    """Raised when a manual shopping item is malformed."""
    pass


@dataclass
class ShoppingListItem:
    item: str
    quantity: float
    unit: str
    category: str

    def to_dict(self) -> dict[str, Any]:
        return {"item": self.item, "quantity": self.quantity, "unit": self.unit, "category": self.category}


@dataclass
class ManualItem:
    """Hand-added shopping entry for one week; never produced by aggregation."""
    id: str
    shopping_week_id: str
    item_name: str
    quantity: float | None = None
    unit: str | None = None
    is_recurring: bool = False
    is_checked: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManualItem":
        item_name = str(data.get("item_name") or "").strip()
        if not item_name:
            raise ShoppingValidationError("item_name is required")

        quantity = data.get("quantity")
        if quantity in (None, ""):
            quantity = None
        else:
            try:
                quantity = float(quantity)
            except (TypeError, ValueError):
                raise ShoppingValidationError(f"quantity must be a number, got {quantity!r}")
            if not math.isfinite(quantity) or quantity < 0:
                raise ShoppingValidationError("quantity must be a finite number >= 0")

        return cls(
            id=str(data.get("id") or ""),
            shopping_week_id=str(data.get("shopping_week_id") or ""),
            item_name=item_name,
            quantity=quantity,
            unit=str(data.get("unit") or "").strip() or None,
            is_recurring=bool(data.get("is_recurring", False)),
            is_checked=bool(data.get("is_checked", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shopping_week_id": self.shopping_week_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "unit": self.unit,
            "is_recurring": self.is_recurring,
            "is_checked": self.is_checked,
        }


@dataclass
class ShoppingList:
    week_monday: date
    items: list[ShoppingListItem]
    manual_items: list[ManualItem] = field(default_factory=list)

    @property
    def items_by_category(self) -> dict[str, list[ShoppingListItem]]:
        """Group items by category."""
        grouped = defaultdict(list)
        for item in self.items:
            grouped[item.category].append(item)
        return dict(grouped)


def generate_shopping_list(
    slots: Iterable[PlanSlot],
    catalog: RecipeCatalog,
    start_monday: date,
    week_offset: int,
    default_servings: int = config.DEFAULT_SERVINGS,
) -> ShoppingList:
    """Aggregate the ingredients needed for one week of a plan.

    Each eaten slot scales its recipe's whole-recipe quantities by
    ``servings / recipe_servings``.  Lines are merged on (normalised name,
    normalised unit); spice lines are left out.  Different units for the
    same ingredient stay on separate rows.
    """
    week_monday = week_monday_for(start_monday, week_offset)
    totals: dict[tuple[str, str], ShoppingListItem] = {}

    week_slots = slots_in_week(slots, start_monday, week_offset)
    logger.debug("Generating shopping list", extra={"week_monday": week_monday.isoformat(), "slot_count": len(week_slots)})

    for slot in week_slots:
        if not slot.is_planned:
            continue
        recipe = catalog.get(slot.recipe_id)
        if recipe is None:
            logger.warning("Slot references unknown recipe", extra={"recipe_id": slot.recipe_id})
            continue

        scale_factor = slot.servings(default_servings) / recipe.recipe_servings

        for line in recipe.ingredients:
            category = line.category or UNCATEGORISED
            if is_spice_category(category):
                continue

            name = normalize_ingredient_name(line.ingredient_base or line.ingredient_name)
            unit = normalize_unit(line.unit)
            key = (name, unit)
            if key not in totals:
                # First-seen category is the one displayed
                totals[key] = ShoppingListItem(item=name, quantity=0.0, unit=unit, category=category)
            totals[key].quantity += line.quantity_recipe_total * scale_factor

    items = sorted(totals.values(), key=lambda x: (strip_accents(x.category).lower(), x.item))
    logger.info(
        "Shopping list generated",
        extra={"item_count": len(items), "category_count": len({i.category for i in items})},
    )
    return ShoppingList(week_monday=week_monday, items=items)
