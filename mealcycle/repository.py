import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from mealcycle import config
from mealcycle.nutrition import Profile, ProfileValidationError
from mealcycle.planner import PlanSlot, SlotValidationError
from mealcycle.recipes import IngredientCatalogEntry, Recipe, RecipeCatalog, RecipeValidationError
from mealcycle.shopping_list import ManualItem
from mealcycle.store import RecordNotFoundError, RecordStore, StoreTransaction

logger = logging.getLogger(__name__)

RECIPES = "recipes"
PROFILES = "profiles"
PLAN_CYCLES = "plan_cycles"
PLAN_SLOTS = "plan_slots"
INGREDIENT_CATALOG = "ingredient_catalog"
SHOPPING_WEEKS = "shopping_weeks"
SHOPPING_MANUAL_ITEMS = "shopping_manual_items"
USER_SETTINGS = "user_settings"


class PlanConflictError(Exception):
    """Raised when a plan save carries a revision older than the stored one."""
    pass


@dataclass
class PlanCycle:
    id: str
    start_monday: date
    weeks_count: int = config.WEEKS_COUNT
    strategy: str = config.PLAN_STRATEGY
    revision: int = 0

    @property
    def month_label(self) -> str:
        return self.start_monday.strftime("%B %Y")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanCycle":
        return cls(
            id=data["id"],
            start_monday=date.fromisoformat(data["start_monday"]),
            weeks_count=int(data.get("weeks_count") or config.WEEKS_COUNT),
            strategy=data.get("strategy") or config.PLAN_STRATEGY,
            revision=int(data.get("revision") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_monday": self.start_monday.isoformat(),
            "weeks_count": self.weeks_count,
            "strategy": self.strategy,
            "revision": self.revision,
            "month_label": self.month_label,
        }


def _parse_rows(rows: Iterable[dict[str, Any]], parser, kind: str) -> list:
    """Parse store rows, dropping (and logging) the malformed ones."""
    parsed = []
    for row in rows:
        try:
            parsed.append(parser(row))
        except (RecipeValidationError, ProfileValidationError, SlotValidationError) as e:
            logger.warning("Skipping malformed %s row: %s", kind, e, extra={"row_id": row.get("id")})
    return parsed


class Repository:
    """Owner-scoped access to the record store, speaking domain types."""

    def __init__(self, store: RecordStore, owner_id: str = config.OWNER_ID):
        self.store = store
        self.owner_id = owner_id

    @property
    def _owned(self) -> dict[str, Any]:
        return {"owner": self.owner_id}

    # -- settings ----------------------------------------------------------

    def get_default_servings(self) -> int:
        rows = self.store.query(USER_SETTINGS, self._owned)
        value = rows[0].get("default_servings") if rows else None
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return config.DEFAULT_SERVINGS
        return value

    def set_default_servings(self, servings: Any) -> int:
        if isinstance(servings, bool) or not isinstance(servings, int) or servings <= 0:
            raise SlotValidationError("default_servings must be a positive whole number")
        self.store.upsert(USER_SETTINGS, {**self._owned, "default_servings": servings}, conflict_on=("owner",))
        logger.info("Default servings updated", extra={"default_servings": servings})
        return servings

    # -- recipes -----------------------------------------------------------

    def load_recipes(self) -> list[Recipe]:
        rows = self.store.query(RECIPES, self._owned, order_by="created_at")
        return _parse_rows(rows, Recipe.from_dict, "recipe")

    def get_recipe(self, recipe_id: str) -> Recipe | None:
        rows = self.store.query(RECIPES, {**self._owned, "id": recipe_id})
        recipes = _parse_rows(rows, Recipe.from_dict, "recipe")
        return recipes[0] if recipes else None

    def save_recipe(self, recipe: Recipe) -> Recipe:
        """Insert or replace a recipe together with its ingredient lines."""
        record = {**recipe.to_dict(), **self._owned}
        if record.get("created_at") is None:
            record.pop("created_at")
        if not recipe.id or self.get_recipe(recipe.id) is None:
            saved = self.store.insert(RECIPES, record)
        else:
            saved = self.store.update(RECIPES, recipe.id, record)
        logger.info("Recipe saved", extra={"recipe_id": saved["id"]})
        return Recipe.from_dict(saved)

    def delete_recipe(self, recipe_id: str) -> bool:
        return self.store.delete(RECIPES, {**self._owned, "id": recipe_id}) > 0

    # -- ingredient catalog ------------------------------------------------

    def load_ingredient_catalog(self, active_only: bool = True) -> list[IngredientCatalogEntry]:
        filters = {**self._owned, "is_active": True} if active_only else self._owned
        rows = self.store.query(INGREDIENT_CATALOG, filters, order_by="ingredient_base")
        return _parse_rows(rows, IngredientCatalogEntry.from_dict, "ingredient catalog")

    def save_catalog_entry(self, entry: IngredientCatalogEntry) -> IngredientCatalogEntry:
        """Create or update the owner's entry for this base name (unique per owner)."""
        record = {**entry.to_dict(), **self._owned}
        if not entry.id:
            record.pop("id")
        saved = self.store.upsert(INGREDIENT_CATALOG, record, conflict_on=("owner", "ingredient_base"))
        return IngredientCatalogEntry.from_dict(saved)

    def delete_catalog_entry(self, entry_id: str) -> bool:
        return self.store.delete(INGREDIENT_CATALOG, {**self._owned, "id": entry_id}) > 0

    def load_catalog(self) -> RecipeCatalog:
        return RecipeCatalog(self.load_recipes(), self.load_ingredient_catalog())

    # -- profiles ----------------------------------------------------------

    def load_profiles(self) -> list[Profile]:
        rows = self.store.query(PROFILES, self._owned, order_by="created_at")
        return _parse_rows(rows, Profile.from_dict, "profile")

    def save_profile(self, profile: Profile) -> Profile:
        record = {**profile.to_dict(), **self._owned}
        existing = self.store.query(PROFILES, {**self._owned, "id": profile.id}) if profile.id else []
        if existing:
            saved = self.store.update(PROFILES, profile.id, record)
        else:
            saved = self.store.insert(PROFILES, record)
        return Profile.from_dict(saved)

    def delete_profile(self, profile_id: str) -> bool:
        return self.store.delete(PROFILES, {**self._owned, "id": profile_id}) > 0

    # -- plans -------------------------------------------------------------

    def find_cycle(self, start_monday: date) -> PlanCycle | None:
        rows = self.store.query(PLAN_CYCLES, {**self._owned, "start_monday": start_monday.isoformat()})
        return PlanCycle.from_dict(rows[0]) if rows else None

    def list_cycles(self) -> list[PlanCycle]:
        rows = self.store.query(PLAN_CYCLES, self._owned, order_by="start_monday", descending=True)
        return [PlanCycle.from_dict(row) for row in rows]

    def load_slots(self, cycle_id: str) -> list[PlanSlot]:
        rows = self.store.query(PLAN_SLOTS, {"plan_cycle_id": cycle_id})
        return _parse_rows(rows, PlanSlot.from_dict, "plan slot")

    def save_plan(
        self,
        start_monday: date,
        slots: Iterable[PlanSlot],
        expected_revision: int | None = None,
    ) -> PlanCycle:
        """Upsert the cycle for *start_monday* and replace all of its slots.

        Runs as one store transaction, so a failure leaves the previously
        saved slots in place.  When *expected_revision* is given and does not
        match the stored revision, nothing is written.

        Raises:
            PlanConflictError: the plan was saved by someone else meanwhile.
        """
        if start_monday.weekday() != 0:
            raise SlotValidationError(f"start_monday must be a Monday, got {start_monday.isoformat()}")
        slots = list(slots)
        with self.store.transaction() as tx:
            existing = tx.query(PLAN_CYCLES, {**self._owned, "start_monday": start_monday.isoformat()})
            current_revision = int(existing[0].get("revision") or 0) if existing else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise PlanConflictError(
                    f"Plan for {start_monday.isoformat()} is at revision {current_revision}, "
                    f"save was based on {expected_revision}"
                )

            cycle = tx.upsert(
                PLAN_CYCLES,
                {
                    **self._owned,
                    "start_monday": start_monday.isoformat(),
                    "weeks_count": config.WEEKS_COUNT,
                    "strategy": config.PLAN_STRATEGY,
                    "revision": current_revision + 1,
                },
                conflict_on=("owner", "start_monday"),
            )
            slot_records = []
            for slot in slots:
                record = slot.to_dict()
                record.pop("label")
                record.pop("kind")
                record["plan_cycle_id"] = cycle["id"]
                slot_records.append(record)
            tx.replace_all(PLAN_SLOTS, {"plan_cycle_id": cycle["id"]}, slot_records)

        logger.info(
            "Plan saved",
            extra={"cycle_id": cycle["id"], "slot_count": len(slots), "revision": cycle["revision"]},
        )
        return PlanCycle.from_dict(cycle)

    # -- shopping weeks and manual items -----------------------------------

    def find_shopping_week(self, week_monday: date) -> dict[str, Any] | None:
        rows = self.store.query(SHOPPING_WEEKS, {**self._owned, "week_monday": week_monday.isoformat()})
        return rows[0] if rows else None

    def ensure_shopping_week(self, week_monday: date, plan_cycle_id: str | None = None) -> str:
        """Return the id of the owner's shopping week, creating it if needed."""
        with self.store.transaction() as tx:
            rows = tx.query(SHOPPING_WEEKS, {**self._owned, "week_monday": week_monday.isoformat()})
            if rows:
                return rows[0]["id"]
            created = tx.insert(SHOPPING_WEEKS, {
                **self._owned,
                "week_monday": week_monday.isoformat(),
                "plan_cycle_id": plan_cycle_id,
            })
        return created["id"]

    def list_manual_items(self, week_monday: date) -> list[ManualItem]:
        week = self.find_shopping_week(week_monday)
        if week is None:
            return []
        rows = self.store.query(SHOPPING_MANUAL_ITEMS, {"shopping_week_id": week["id"]}, order_by="created_at")
        return [ManualItem.from_dict(row) for row in rows]

    def add_manual_item(self, week_monday: date, data: dict[str, Any], plan_cycle_id: str | None = None) -> ManualItem:
        # Validate before creating the week so a bad item leaves no trace
        item = ManualItem.from_dict({**data, "id": None, "is_checked": False})
        week_id = self.ensure_shopping_week(week_monday, plan_cycle_id)
        record = item.to_dict()
        record.pop("id")
        record["shopping_week_id"] = week_id
        return ManualItem.from_dict(self.store.insert(SHOPPING_MANUAL_ITEMS, record))

    def _owns_manual_item(self, tx: StoreTransaction, item_id: str) -> bool:
        item = tx.get(SHOPPING_MANUAL_ITEMS, item_id)
        if item is None:
            return False
        week = tx.get(SHOPPING_WEEKS, item.get("shopping_week_id") or "")
        return week is not None and week.get("owner") == self.owner_id

    def set_manual_item_checked(self, item_id: str, is_checked: bool) -> ManualItem:
        """Raises RecordNotFoundError when the item is not in one of this owner's weeks."""
        with self.store.transaction() as tx:
            if not self._owns_manual_item(tx, item_id):
                raise RecordNotFoundError(f"No shopping item with id {item_id}")
            row = tx.update(SHOPPING_MANUAL_ITEMS, item_id, {"is_checked": bool(is_checked)})
        return ManualItem.from_dict(row)

    def delete_manual_item(self, item_id: str) -> bool:
        with self.store.transaction() as tx:
            if not self._owns_manual_item(tx, item_id):
                return False
            return tx.delete(SHOPPING_MANUAL_ITEMS, {"id": item_id}) > 0
