import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Iterable

from mealcycle import config
from mealcycle.ingredient_normalizer import strip_accents
from mealcycle.recipes import PASTA_FIXED, PIZZA_FIXED, POOL, Recipe, RecipeCatalog

logger = logging.getLogger(__name__)

# Slot statuses
STATUS_RECIPE = "recipe"
STATUS_FIXED = "fixed"
STATUS_OUT = "out"
SLOT_STATUSES: frozenset[str] = frozenset({STATUS_RECIPE, STATUS_FIXED, STATUS_OUT})


@dataclass(frozen=True)
class SlotDefinition:
    slot_name: str
    label: str
    day_offset: int  # 0 = Monday … 6 = Sunday
    kind: str
    default_status: str


# The fixed weekly template, in display order.  Friday dinner is always
# pizza and Saturday lunch always pasta; every other slot rotates through
# the pool.
WEEK_SLOT_DEFINITIONS: tuple[SlotDefinition, ...] = (
    SlotDefinition("mon_dinner", "Lun cena", 0, POOL, STATUS_RECIPE),
    SlotDefinition("tue_dinner", "Mar cena", 1, POOL, STATUS_RECIPE),
    SlotDefinition("wed_dinner", "Mie cena", 2, POOL, STATUS_RECIPE),
    SlotDefinition("thu_dinner", "Jue cena", 3, POOL, STATUS_RECIPE),
    SlotDefinition("fri_dinner_pizza", "Vie cena (pizza)", 4, PIZZA_FIXED, STATUS_FIXED),
    SlotDefinition("sat_lunch_pasta", "Sab comida (pasta)", 5, PASTA_FIXED, STATUS_FIXED),
    SlotDefinition("sat_dinner", "Sab cena", 5, POOL, STATUS_RECIPE),
    SlotDefinition("sun_lunch", "Dom comida", 6, POOL, STATUS_RECIPE),
    SlotDefinition("sun_dinner", "Dom cena", 6, POOL, STATUS_RECIPE),
)

SLOT_DEFINITIONS_BY_NAME: dict[str, SlotDefinition] = {d.slot_name: d for d in WEEK_SLOT_DEFINITIONS}
SLOT_ORDER: dict[str, int] = {d.slot_name: i for i, d in enumerate(WEEK_SLOT_DEFINITIONS)}


class SlotValidationError(ValueError):
    """Raised when a slot row or a slot edit is invalid."""
    pass


def _parse_servings(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SlotValidationError("servings_override must be a positive whole number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise SlotValidationError(f"servings_override must be a number, got {value!r}")
    if not math.isfinite(number) or number <= 0 or number != int(number):
        raise SlotValidationError("servings_override must be a positive whole number")
    return int(number)


@dataclass(frozen=True)
class PlanSlot:
    slot_date: date
    slot_name: str
    label: str
    kind: str
    status: str
    recipe_id: str | None = None
    servings_override: int | None = None

    @property
    def key(self) -> tuple[date, str]:
        return (self.slot_date, self.slot_name)

    @property
    def is_planned(self) -> bool:
        """True when the slot is eaten and has a recipe assigned."""
        return self.status != STATUS_OUT and self.recipe_id is not None

    def servings(self, default_servings: int) -> int:
        return self.servings_override or default_servings

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanSlot":
        """Parse a stored slot row; label and kind come from the template."""
        definition = SLOT_DEFINITIONS_BY_NAME.get(data.get("slot_name"))
        if definition is None:
            raise SlotValidationError(f"Unknown slot_name: {data.get('slot_name')!r}")

        raw_date = data.get("slot_date")
        try:
            slot_date = raw_date if isinstance(raw_date, date) else date.fromisoformat(str(raw_date))
        except ValueError:
            raise SlotValidationError(f"Invalid slot_date: {raw_date!r}")

        status = data.get("status") or definition.default_status
        if status not in SLOT_STATUSES:
            raise SlotValidationError(f"Unknown slot status: {status!r}")

        return cls(
            slot_date=slot_date,
            slot_name=definition.slot_name,
            label=definition.label,
            kind=definition.kind,
            status=status,
            recipe_id=None if status == STATUS_OUT else (data.get("recipe_id") or None),
            servings_override=_parse_servings(data.get("servings_override")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_date": self.slot_date.isoformat(),
            "slot_name": self.slot_name,
            "label": self.label,
            "kind": self.kind,
            "status": self.status,
            "recipe_id": None if self.status == STATUS_OUT else self.recipe_id,
            "servings_override": self.servings_override,
        }


@dataclass(frozen=True)
class RecipeFlags:
    is_risotto: bool = False
    has_rice: bool = False
    has_beef: bool = False


NO_FLAGS = RecipeFlags()


def recipe_flags(recipe: Recipe | None) -> RecipeFlags:
    """Classify a recipe for the weekly variety rules from its name and ingredients."""
    if recipe is None:
        return NO_FLAGS
    name_text = strip_accents(recipe.name.lower())
    ingredients_text = " ".join(
        strip_accents((line.ingredient_base or line.ingredient_name).lower())
        for line in recipe.ingredients
    )
    is_risotto = "risotto" in name_text
    return RecipeFlags(
        is_risotto=is_risotto,
        has_rice=is_risotto or "arroz" in name_text or "arroz" in ingredients_text,
        has_beef="ternera" in name_text or "ternera" in ingredients_text,
    )


def stable_hash(value: str) -> int:
    """Seeded tie-break hash: 31-multiplier rolling hash, unsigned 32-bit.

    ``h = (h * 31 + ord(c)) mod 2**32`` over every character of *value*,
    starting from 0.  Pure and stable across processes (unlike ``hash()``).
    """
    h = 0
    for char in value:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    return h


def tie_break_hash(recipe_id: str, slot_date: date, seed: int) -> int:
    return stable_hash(f"{recipe_id}|{slot_date.isoformat()}|{seed}")


@dataclass
class UsageState:
    """Per-recipe usage across the whole horizon."""
    usage_count: dict[str, int] = field(default_factory=dict)
    last_used: dict[str, date] = field(default_factory=dict)

    def count(self, recipe_id: str) -> int:
        return self.usage_count.get(recipe_id, 0)

    def cooled_down(self, recipe_id: str, slot_date: date, cooldown_days: int) -> bool:
        last = self.last_used.get(recipe_id)
        return last is None or (slot_date - last).days >= cooldown_days

    def record(self, recipe_id: str, slot_date: date) -> None:
        self.usage_count[recipe_id] = self.count(recipe_id) + 1
        self.last_used[recipe_id] = slot_date


@dataclass
class WeekState:
    """Variety counters, reset at the start of every week."""
    risotto_count: int = 0
    rice_count: int = 0
    beef_dates: set[date] = field(default_factory=set)

    def record(self, flags: RecipeFlags, slot_date: date) -> None:
        if flags.is_risotto:
            self.risotto_count += 1
        if flags.has_rice:
            self.rice_count += 1
        if flags.has_beef:
            self.beef_dates.add(slot_date)


@dataclass
class PlanGeneration:
    slots: list[PlanSlot]
    usage: UsageState
    relaxed_slots: list[tuple[date, str]] = field(default_factory=list)


def sort_slots(slots: Iterable[PlanSlot]) -> list[PlanSlot]:
    return sorted(slots, key=lambda s: (s.slot_date, SLOT_ORDER.get(s.slot_name, 0)))


def week_index_for(start_monday: date, slot_date: date) -> int:
    return (slot_date - start_monday).days // 7


def week_monday_for(start_monday: date, week_offset: int) -> date:
    return start_monday + timedelta(days=7 * week_offset)


def slots_in_week(slots: Iterable[PlanSlot], start_monday: date, week_offset: int) -> list[PlanSlot]:
    return [s for s in slots if week_index_for(start_monday, s.slot_date) == week_offset]


def next_monday(today: date) -> date:
    """The Monday after *today* (a week ahead when today is a Monday)."""
    days_until = (7 - today.weekday()) % 7 or 7
    return today + timedelta(days=days_until)


class SlotPlanner:
    """Greedy, deterministic filler for the weekly slot template.

    Pool slots are filled least-used first, subject to a per-recipe cooldown
    and weekly caps on risotto, rice and beef-on-consecutive-days.  When the
    pool is too small to satisfy every rule the rules are relaxed in tiers
    rather than leaving the slot empty.
    """

    def __init__(
        self,
        catalog: RecipeCatalog,
        weeks_count: int = config.WEEKS_COUNT,
        cooldown_days: int = config.COOLDOWN_DAYS,
        max_risotto_per_week: int = config.MAX_RISOTTO_PER_WEEK,
        max_rice_per_week: int = config.MAX_RICE_PER_WEEK,
    ):
        self.catalog = catalog
        self.weeks_count = weeks_count
        self.cooldown_days = cooldown_days
        self.max_risotto_per_week = max_risotto_per_week
        self.max_rice_per_week = max_rice_per_week
        self._pool = catalog.recipes_by_kind(POOL)
        self._flags = {recipe.id: recipe_flags(recipe) for recipe in catalog.recipes}

    def _meets_week_rules(self, recipe: Recipe, week: WeekState, previous_date: date) -> bool:
        flags = self._flags[recipe.id]
        if flags.is_risotto and week.risotto_count >= self.max_risotto_per_week:
            return False
        if flags.has_rice and week.rice_count >= self.max_rice_per_week:
            return False
        if flags.has_beef and previous_date in week.beef_dates:
            return False
        return True

    def _pick_pool_recipe(
        self,
        slot_date: date,
        week: WeekState,
        usage: UsageState,
        seed: int,
    ) -> tuple[Recipe | None, bool]:
        """Return (recipe, relaxed) for a pool slot.

        Candidate tiers, first non-empty wins:
          1. cooled down AND within the weekly rules
          2. within the weekly rules (cooldown dropped)
          3. cooled down (weekly rules dropped), else the whole pool
        """
        previous_date = slot_date - timedelta(days=1)
        cooled = [r for r in self._pool if usage.cooled_down(r.id, slot_date, self.cooldown_days)]
        tier1 = [r for r in cooled if self._meets_week_rules(r, week, previous_date)]

        candidates = tier1
        if not candidates:
            candidates = [r for r in self._pool if self._meets_week_rules(r, week, previous_date)]
        if not candidates:
            candidates = cooled or self._pool
        if not candidates:
            return None, False

        chosen = min(
            candidates,
            key=lambda r: (
                usage.count(r.id),
                usage.last_used.get(r.id, date.min),
                tie_break_hash(r.id, slot_date, seed),
                r.name,
            ),
        )
        return chosen, not tier1

    def generate(self, start_monday: date, seed: int = 0) -> PlanGeneration:
        if start_monday.weekday() != 0:
            raise SlotValidationError(f"start_monday must be a Monday, got {start_monday.isoformat()}")

        logger.info(
            "Generating plan slots",
            extra={
                "start_monday": start_monday.isoformat(),
                "weeks": self.weeks_count,
                "pool_size": len(self._pool),
                "seed": seed,
            },
        )

        usage = UsageState()
        slots: list[PlanSlot] = []
        relaxed: list[tuple[date, str]] = []

        for week_index in range(self.weeks_count):
            week = WeekState()
            for definition in WEEK_SLOT_DEFINITIONS:
                slot_date = start_monday + timedelta(days=7 * week_index + definition.day_offset)

                if definition.kind == POOL:
                    recipe, was_relaxed = self._pick_pool_recipe(slot_date, week, usage, seed)
                    if recipe is not None:
                        usage.record(recipe.id, slot_date)
                    if was_relaxed and recipe is not None:
                        relaxed.append((slot_date, definition.slot_name))
                        logger.warning(
                            "Relaxed variety rules to fill slot",
                            extra={"slot_date": slot_date.isoformat(), "slot_name": definition.slot_name},
                        )
                else:
                    recipe = self.catalog.first_of_kind(definition.kind)

                if recipe is None:
                    logger.warning(
                        "No recipe available for slot",
                        extra={
                            "slot_date": slot_date.isoformat(),
                            "slot_name": definition.slot_name,
                            "kind": definition.kind,
                        },
                    )
                else:
                    week.record(self._flags[recipe.id], slot_date)

                slots.append(PlanSlot(
                    slot_date=slot_date,
                    slot_name=definition.slot_name,
                    label=definition.label,
                    kind=definition.kind,
                    status=definition.default_status,
                    recipe_id=recipe.id if recipe is not None else None,
                ))

        logger.info("Plan slots generated", extra={"slot_count": len(slots), "relaxed_count": len(relaxed)})
        return PlanGeneration(slots=sort_slots(slots), usage=usage, relaxed_slots=relaxed)


def generate_plan_slots(
    catalog: RecipeCatalog,
    start_monday: date,
    seed: int = 0,
    persisted: Iterable[PlanSlot] | None = None,
    **planner_options: Any,
) -> list[PlanSlot]:
    """Generate the slot sequence for a plan, merging saved slots when given.

    Deterministic: the same catalog snapshot, start Monday and seed always
    produce the same sequence.
    """
    slots = SlotPlanner(catalog, **planner_options).generate(start_monday, seed).slots
    if persisted is not None:
        slots = merge_persisted_slots(slots, persisted)
    return slots


def merge_persisted_slots(fresh: Iterable[PlanSlot], persisted: Iterable[PlanSlot]) -> list[PlanSlot]:
    """Overlay saved status/recipe/servings onto freshly generated slots.

    A saved slot always wins on an exact (slot_date, slot_name) match;
    saved slots with no fresh counterpart are dropped.
    """
    by_key = {slot.key: slot for slot in fresh}
    for saved in persisted:
        existing = by_key.get(saved.key)
        if existing is None:
            continue
        by_key[saved.key] = replace(
            existing,
            status=saved.status,
            recipe_id=saved.recipe_id,
            servings_override=saved.servings_override,
        )
    return sort_slots(by_key.values())


def regenerate_plan(catalog: RecipeCatalog, start_monday: date, seed: int, **planner_options: Any) -> list[PlanSlot]:
    """Full regeneration: every saved override is discarded."""
    return generate_plan_slots(catalog, start_monday, seed, **planner_options)


def regenerate_week(
    current: Iterable[PlanSlot],
    catalog: RecipeCatalog,
    start_monday: date,
    week_index: int,
    seed: int,
    **planner_options: Any,
) -> list[PlanSlot]:
    """Regenerate one week, leaving every other week's slots untouched.

    The whole horizon is regenerated with *seed* so the chosen week sees the
    same usage history it would in a full run; only its slots are taken.
    """
    planner = SlotPlanner(catalog, **planner_options)
    if not 0 <= week_index < planner.weeks_count:
        raise SlotValidationError(f"week_index must be between 0 and {planner.weeks_count - 1}")

    regenerated = {slot.key: slot for slot in planner.generate(start_monday, seed).slots}
    result = []
    for slot in current:
        if week_index_for(start_monday, slot.slot_date) == week_index:
            slot = regenerated.get(slot.key, slot)
        result.append(slot)
    logger.info("Week regenerated", extra={"week_index": week_index, "seed": seed})
    return sort_slots(result)


def _edit_slot(slots: Iterable[PlanSlot], key: tuple[date, str], edit) -> list[PlanSlot]:
    slots = list(slots)
    for index, slot in enumerate(slots):
        if slot.key == key:
            slots[index] = edit(slot)
            return slots
    raise SlotValidationError(f"No slot {key[1]} on {key[0].isoformat()}")


def toggle_slot_out(
    slots: Iterable[PlanSlot],
    key: tuple[date, str],
    is_out: bool,
    catalog: RecipeCatalog,
) -> list[PlanSlot]:
    """Mark a slot as eaten out (clearing its recipe) or bring it back.

    Bringing a slot back restores the status for its kind and, if it has no
    recipe, assigns the first catalog recipe of that kind.
    """
    def edit(slot: PlanSlot) -> PlanSlot:
        if is_out:
            return replace(slot, status=STATUS_OUT, recipe_id=None)
        status = STATUS_RECIPE if slot.kind == POOL else STATUS_FIXED
        recipe_id = slot.recipe_id
        if recipe_id is None:
            default = catalog.first_of_kind(slot.kind)
            recipe_id = default.id if default is not None else None
        return replace(slot, status=status, recipe_id=recipe_id)

    return _edit_slot(slots, key, edit)


def change_slot_recipe(
    slots: Iterable[PlanSlot],
    key: tuple[date, str],
    recipe_id: str | None,
    catalog: RecipeCatalog,
) -> list[PlanSlot]:
    """Assign a recipe of the slot's kind, or clear it with None."""
    def edit(slot: PlanSlot) -> PlanSlot:
        if recipe_id is None:
            return replace(slot, recipe_id=None)
        if slot.status == STATUS_OUT:
            raise SlotValidationError("Cannot assign a recipe to a slot marked as out")
        recipe = catalog.get(recipe_id)
        if recipe is None:
            raise SlotValidationError(f"Recipe not found: {recipe_id}")
        if recipe.kind != slot.kind:
            raise SlotValidationError(f"Recipe '{recipe.name}' is {recipe.kind}, slot needs {slot.kind}")
        return replace(slot, recipe_id=recipe_id)

    return _edit_slot(slots, key, edit)


def change_slot_servings(
    slots: Iterable[PlanSlot],
    key: tuple[date, str],
    servings: Any,
) -> list[PlanSlot]:
    """Set or clear (None / "") a slot's servings override."""
    servings_override = _parse_servings(servings)
    return _edit_slot(slots, key, lambda slot: replace(slot, servings_override=servings_override))
