"""Consumed-versus-target nutrition for one calendar week of a plan.

Recipe macros are stored per serving.  A slot cooks ``servings_override``
(or the default) servings and the household's active profiles share them
evenly, so each person eats ``servings / active_profiles`` servings of it.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable

from mealcycle import config
from mealcycle.nutrition import (
    NUTRIENTS,
    NutritionTargets,
    Profile,
    calculate_targets,
    classify_coverage,
    nutrient_status,
)
from mealcycle.planner import SLOT_DEFINITIONS_BY_NAME, PlanSlot, slots_in_week, week_monday_for
from mealcycle.recipes import Recipe, RecipeCatalog

logger = logging.getLogger(__name__)

# Recipe attribute holding each nutrient's per-serving value
_RECIPE_FIELDS: dict[str, str] = {
    "kcal": "kcal",
    "protein": "protein_g",
    "carbs": "carbs_g",
    "fat": "fat_g",
    "fiber": "fiber_g",
}

DAYS_PER_WEEK = 7


def _empty_totals() -> dict[str, float]:
    return dict.fromkeys(NUTRIENTS, 0.0)


def _contribution(recipe: Recipe, portions: float) -> dict[str, float]:
    return {nutrient: getattr(recipe, _RECIPE_FIELDS[nutrient]) * portions for nutrient in NUTRIENTS}


def _add(totals: dict[str, float], amounts: dict[str, float]) -> None:
    for nutrient, amount in amounts.items():
        totals[nutrient] += amount


def active_profiles(profiles: Iterable[Profile]) -> list[Profile]:
    return [p for p in profiles if p.is_active]


@dataclass
class ProfileWeeklyNutrition:
    profile: Profile
    targets: NutritionTargets | None  # daily
    consumed: dict[str, float]

    @property
    def weekly_target(self) -> dict[str, float] | None:
        if self.targets is None:
            return None
        return self.targets.as_nutrients(days=DAYS_PER_WEEK)

    @property
    def statuses(self) -> dict[str, str]:
        weekly = self.weekly_target or {}
        return {n: nutrient_status(self.consumed[n], weekly.get(n)) for n in NUTRIENTS}


@dataclass
class SlotContribution:
    slot_date: date
    slot_name: str
    label: str
    recipe_name: str
    nutrients: dict[str, float]


@dataclass
class DailyCoverage:
    day: date
    consumed: dict[str, float]
    target: dict[str, float] | None
    slot_details: list[SlotContribution] = field(default_factory=list)

    @property
    def balance(self) -> dict[str, float] | None:
        """target − consumed: positive means eat more, negative means surplus."""
        if self.target is None:
            return None
        return {n: self.target[n] - self.consumed[n] for n in NUTRIENTS}

    @property
    def coverage_ratio(self) -> float:
        if self.target is None:
            return 0.0
        return self.consumed["kcal"] / max(self.target["kcal"], 1)

    @property
    def coverage_percent(self) -> float:
        return self.coverage_ratio * 100

    @property
    def status(self) -> str:
        return classify_coverage(self.coverage_ratio)

    @property
    def nutrient_statuses(self) -> dict[str, str]:
        target = self.target or {}
        return {n: nutrient_status(self.consumed[n], target.get(n)) for n in NUTRIENTS}


def _eaten_slots(
    slots: Iterable[PlanSlot],
    catalog: RecipeCatalog,
    start_monday: date,
    week_offset: int,
) -> list[tuple[PlanSlot, Recipe]]:
    eaten = []
    for slot in slots_in_week(slots, start_monday, week_offset):
        if not slot.is_planned:
            continue
        recipe = catalog.get(slot.recipe_id)
        if recipe is None:
            logger.warning("Slot references unknown recipe", extra={"recipe_id": slot.recipe_id})
            continue
        eaten.append((slot, recipe))
    return eaten


def weekly_nutrition_by_profile(
    slots: Iterable[PlanSlot],
    catalog: RecipeCatalog,
    profiles: Iterable[Profile],
    start_monday: date,
    week_offset: int,
    default_servings: int = config.DEFAULT_SERVINGS,
) -> list[ProfileWeeklyNutrition]:
    """Weekly consumed totals and targets for every active profile."""
    active = active_profiles(profiles)
    if not active:
        return []

    consumed = _empty_totals()
    for slot, recipe in _eaten_slots(slots, catalog, start_monday, week_offset):
        portions_per_person = slot.servings(default_servings) / len(active)
        _add(consumed, _contribution(recipe, portions_per_person))

    logger.debug(
        "Weekly nutrition computed",
        extra={"week_offset": week_offset, "profile_count": len(active)},
    )
    return [
        ProfileWeeklyNutrition(profile=profile, targets=calculate_targets(profile), consumed=dict(consumed))
        for profile in active
    ]


def select_profile(profiles: Iterable[Profile], profile_id: str | None) -> Profile | None:
    """The active profile with *profile_id*, else the first active profile."""
    active = active_profiles(profiles)
    if not active:
        return None
    return next((p for p in active if p.id == profile_id), active[0])


def daily_coverage(
    slots: Iterable[PlanSlot],
    catalog: RecipeCatalog,
    profiles: Iterable[Profile],
    start_monday: date,
    week_offset: int,
    profile_id: str | None = None,
    default_servings: int = config.DEFAULT_SERVINGS,
) -> list[DailyCoverage]:
    """Seven days of consumed-versus-target nutrition for one profile.

    Returns an empty list when there are no active profiles.
    """
    profiles = list(profiles)
    active = active_profiles(profiles)
    profile = select_profile(profiles, profile_id)
    if profile is None:
        return []

    targets = calculate_targets(profile)
    target_daily = targets.as_nutrients() if targets is not None else None

    by_date: dict[date, list[tuple[PlanSlot, Recipe]]] = {}
    for slot, recipe in _eaten_slots(slots, catalog, start_monday, week_offset):
        by_date.setdefault(slot.slot_date, []).append((slot, recipe))

    week_monday = week_monday_for(start_monday, week_offset)
    days = []
    for day_offset in range(DAYS_PER_WEEK):
        day = week_monday + timedelta(days=day_offset)
        coverage = DailyCoverage(day=day, consumed=_empty_totals(), target=target_daily)
        for slot, recipe in by_date.get(day, []):
            portions_per_person = slot.servings(default_servings) / len(active)
            nutrients = _contribution(recipe, portions_per_person)
            definition = SLOT_DEFINITIONS_BY_NAME.get(slot.slot_name)
            coverage.slot_details.append(SlotContribution(
                slot_date=slot.slot_date,
                slot_name=slot.slot_name,
                label=definition.label if definition else slot.slot_name,
                recipe_name=recipe.name,
                nutrients=nutrients,
            ))
            _add(coverage.consumed, nutrients)
        days.append(coverage)

    logger.debug(
        "Daily coverage computed",
        extra={"profile_id": profile.id, "week_monday": week_monday.isoformat()},
    )
    return days
