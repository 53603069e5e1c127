import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from rapidfuzz import fuzz, process

from mealcycle.ingredient_normalizer import catalog_key, normalize_ingredient_name

logger = logging.getLogger(__name__)

# Recipe kinds.  Pool recipes rotate through the variable slots; fixed kinds
# are pinned to their own slot in the weekly template.
POOL = "pool"
PIZZA_FIXED = "pizza_fixed"
PASTA_FIXED = "pasta_fixed"
RECIPE_KINDS: tuple[str, ...] = (POOL, PIZZA_FIXED, PASTA_FIXED)
FIXED_KINDS: frozenset[str] = frozenset({PIZZA_FIXED, PASTA_FIXED})

KIND_LABELS = {
    POOL: "Pool (variable)",
    PIZZA_FIXED: "Pizza fija",
    PASTA_FIXED: "Pasta fija",
}

# Macro fields stored on a recipe.  Values are PER SERVING, while ingredient
# quantities are stored for the WHOLE recipe (recipe_servings servings).
MACRO_FIELDS: tuple[str, ...] = ("kcal", "protein_g", "carbs_g", "fat_g", "fiber_g")

# Minimum rapidfuzz WRatio score for an ingredient catalog suggestion.
_SUGGESTION_THRESHOLD = 60


class RecipeValidationError(ValueError):
    """Raised when a recipe, ingredient line or catalog entry is malformed."""
    pass


def _finite_number(data: dict[str, Any], key: str, *, minimum: float = 0.0) -> float:
    value = data.get(key)
    if isinstance(value, bool) or value is None or value == "":
        raise RecipeValidationError(f"{key} is required")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise RecipeValidationError(f"{key} must be a number, got {value!r}")
    if not math.isfinite(number) or number < minimum:
        raise RecipeValidationError(f"{key} must be a finite number >= {minimum:g}")
    return number


def _whole_number(data: dict[str, Any], key: str) -> int:
    number = _finite_number(data, key)
    if number != int(number):
        raise RecipeValidationError(f"{key} must be a whole number, got {data.get(key)!r}")
    return int(number)


def _positive_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise RecipeValidationError(f"{key} must be a positive whole number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise RecipeValidationError(f"{key} must be a positive whole number")
    if not math.isfinite(number) or number <= 0 or number != int(number):
        raise RecipeValidationError(f"{key} must be a positive whole number")
    return int(number)


@dataclass
class IngredientLine:
    ingredient_name: str
    ingredient_base: str
    unit: str
    category: str
    quantity_recipe_total: float

    def quantity_per_serving(self, recipe_servings: int) -> float:
        return self.quantity_recipe_total / recipe_servings

    @classmethod
    def from_dict(cls, data: dict[str, Any], recipe_servings: int) -> "IngredientLine":
        """Parse a stored ingredient row.

        Rows written before quantity_recipe_total existed only carry
        quantity_per_serving; the whole-recipe amount is derived from it.
        """
        name = str(data.get("ingredient_name") or "").strip()
        if not name:
            raise RecipeValidationError("ingredient_name is required")

        if data.get("quantity_recipe_total") is not None:
            quantity = _finite_number(data, "quantity_recipe_total")
        else:
            quantity = _finite_number(data, "quantity_per_serving") * recipe_servings
        if quantity <= 0:
            raise RecipeValidationError(f"Quantity for '{name}' must be positive")

        return cls(
            ingredient_name=name,
            ingredient_base=str(data.get("ingredient_base") or "").strip() or normalize_ingredient_name(name),
            unit=str(data.get("unit") or "").strip(),
            category=str(data.get("category") or "").strip(),
            quantity_recipe_total=quantity,
        )

    def to_dict(self, recipe_servings: int) -> dict[str, Any]:
        return {
            "ingredient_name": self.ingredient_name,
            "ingredient_base": self.ingredient_base,
            "quantity_recipe_total": self.quantity_recipe_total,
            "quantity_per_serving": self.quantity_per_serving(recipe_servings),
            "unit": self.unit,
            "category": self.category or None,
        }


@dataclass
class Recipe:
    id: str
    name: str
    kind: str
    kcal: float
    protein_g: float
    carbs_g: float
    fat_g: float
    fiber_g: float
    recipe_servings: int
    prep_minutes: int | None = None
    notes: str | None = None
    ingredients: list[IngredientLine] = field(default_factory=list)
    created_at: str | None = None

    @property
    def is_fixed(self) -> bool:
        return self.kind in FIXED_KINDS

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipe":
        """Create a Recipe from a store row, validating every field.

        Raises:
            RecipeValidationError: on a missing id or name, an unknown kind,
                a negative or non-finite macro, non-positive servings or a
                malformed ingredient line.
        """
        recipe_id = str(data.get("id") or "").strip()
        if not recipe_id:
            raise RecipeValidationError("Recipe id is required")

        name = str(data.get("name") or "").strip()
        if not name:
            raise RecipeValidationError("Recipe name is required")

        kind = data.get("meal_type") or POOL
        if kind not in RECIPE_KINDS:
            raise RecipeValidationError(f"Unknown recipe kind: {kind!r}")

        macros = {key: _finite_number(data, key) for key in MACRO_FIELDS}
        recipe_servings = _positive_int(data.get("recipe_servings"), "recipe_servings")

        prep_minutes = data.get("prep_minutes")
        if prep_minutes in (None, ""):
            prep_minutes = None
        else:
            prep_minutes = _whole_number(data, "prep_minutes")

        raw_lines = data.get("recipe_ingredients") or []
        ingredients = [IngredientLine.from_dict(line, recipe_servings) for line in raw_lines]

        return cls(
            id=recipe_id,
            name=name,
            kind=kind,
            recipe_servings=recipe_servings,
            prep_minutes=prep_minutes,
            notes=(data.get("notes") or "").strip() or None,
            ingredients=ingredients,
            created_at=data.get("created_at"),
            **macros,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "meal_type": self.kind,
            "kcal": self.kcal,
            "protein_g": self.protein_g,
            "carbs_g": self.carbs_g,
            "fat_g": self.fat_g,
            "fiber_g": self.fiber_g,
            "recipe_servings": self.recipe_servings,
            "prep_minutes": self.prep_minutes,
            "notes": self.notes,
            "created_at": self.created_at,
            "recipe_ingredients": [line.to_dict(self.recipe_servings) for line in self.ingredients],
        }


@dataclass
class IngredientCatalogEntry:
    id: str
    ingredient_base: str
    default_unit: str
    default_category: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IngredientCatalogEntry":
        base = str(data.get("ingredient_base") or "").strip()
        if not base:
            raise RecipeValidationError("ingredient_base is required")
        return cls(
            id=str(data.get("id") or ""),
            ingredient_base=base,
            default_unit=str(data.get("default_unit") or "").strip(),
            default_category=str(data.get("default_category") or "").strip(),
            is_active=data.get("is_active", True) is not False,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ingredient_base": self.ingredient_base,
            "default_unit": self.default_unit,
            "default_category": self.default_category,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class CatalogDefaults:
    unit: str
    category: str


class RecipeCatalog:
    """Read-only snapshot of an owner's recipes and ingredient catalog.

    Recipe order is the snapshot's insertion order; the planner relies on it
    to pick the "first" recipe of a fixed kind deterministically.
    """

    def __init__(
        self,
        recipes: Iterable[Recipe],
        ingredient_catalog: Iterable[IngredientCatalogEntry] = (),
    ):
        self._recipes = list(recipes)
        self._by_id = {recipe.id: recipe for recipe in self._recipes}
        self._entries: dict[str, IngredientCatalogEntry] = {}
        for entry in ingredient_catalog:
            if not entry.is_active:
                continue
            # First active entry wins for a duplicated base name
            self._entries.setdefault(catalog_key(entry.ingredient_base), entry)

    def __len__(self) -> int:
        return len(self._recipes)

    @property
    def recipes(self) -> list[Recipe]:
        return list(self._recipes)

    def get(self, recipe_id: str | None) -> Recipe | None:
        if not recipe_id:
            return None
        return self._by_id.get(recipe_id)

    def recipes_by_kind(self, kind: str) -> list[Recipe]:
        return [recipe for recipe in self._recipes if recipe.kind == kind]

    def first_of_kind(self, kind: str) -> Recipe | None:
        return next((recipe for recipe in self._recipes if recipe.kind == kind), None)

    def resolve_defaults(self, ingredient_base: str) -> CatalogDefaults | None:
        """Return the catalog's default unit and category for a base name, if any."""
        entry = self._entries.get(catalog_key(ingredient_base))
        if entry is None:
            return None
        return CatalogDefaults(unit=entry.default_unit, category=entry.default_category)

    def suggest_ingredients(self, query: str, limit: int = 5) -> list[str]:
        """Fuzzy-match *query* against active catalog base names, best first."""
        key = catalog_key(query)
        if not key or not self._entries:
            return []
        matches = process.extract(
            key,
            list(self._entries.keys()),
            scorer=fuzz.WRatio,
            limit=limit,
            score_cutoff=_SUGGESTION_THRESHOLD,
        )
        return [self._entries[choice].ingredient_base for choice, _score, _idx in matches]


def build_ingredient_line(
    ingredient_name: str,
    quantity_recipe_total: float,
    unit: str = "",
    category: str = "",
    ingredient_base: str = "",
    catalog: RecipeCatalog | None = None,
) -> IngredientLine:
    """Build a new ingredient line, pre-filling unit/category from the catalog.

    Catalog defaults only fill fields left blank; a unit or category the
    caller typed is always kept.
    """
    name = ingredient_name.strip()
    base = ingredient_base.strip() or normalize_ingredient_name(name)
    unit = unit.strip()
    category = category.strip()

    defaults = catalog.resolve_defaults(base) if catalog is not None else None
    if defaults is not None:
        unit = unit or defaults.unit
        category = category or defaults.category

    return IngredientLine(
        ingredient_name=name,
        ingredient_base=base,
        unit=unit,
        category=category,
        quantity_recipe_total=quantity_recipe_total,
    )


def build_ingredient_lines(
    raw_lines: Iterable[dict[str, Any]],
    catalog: RecipeCatalog | None = None,
) -> list[IngredientLine]:
    """Turn hand-entered ingredient rows into lines, skipping incomplete rows.

    A row is kept only when it has a name, a unit (typed or from the
    catalog) and a positive finite quantity.
    """
    lines = []
    for raw in raw_lines:
        name = str(raw.get("ingredient_name") or "").strip()
        if not name:
            continue
        try:
            quantity = float(raw.get("quantity_recipe_total"))
        except (TypeError, ValueError):
            continue
        if not math.isfinite(quantity) or quantity <= 0:
            continue

        line = build_ingredient_line(
            name,
            quantity,
            unit=str(raw.get("unit") or ""),
            category=str(raw.get("category") or ""),
            ingredient_base=str(raw.get("ingredient_base") or ""),
            catalog=catalog,
        )
        if not line.unit:
            logger.debug("Skipping ingredient line without unit", extra={"ingredient": name})
            continue
        lines.append(line)
    return lines
