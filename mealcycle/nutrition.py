"""Per-profile daily nutrition targets and coverage classification.

Targets use the Mifflin–St Jeor resting energy equation, scaled by an
activity factor and adjusted for the profile's goal.  Protein is set per kg
of body weight, fat at 30 % of energy, carbs fill the remaining energy and
fiber follows the 14 g / 1000 kcal guideline.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SEXES: tuple[str, ...] = ("male", "female", "other")
GOALS: tuple[str, ...] = ("maintain", "lose", "gain")

ACTIVITY_FACTORS: dict[str, float] = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "very_active": 1.725,
    "extra_active": 1.9,
}

_SEX_OFFSET = {"male": 5, "female": -161}
_OTHER_SEX_OFFSET = -78
_GOAL_KCAL_FACTOR = {"lose": 0.85, "gain": 1.10}
_GOAL_PROTEIN_PER_KG = {"lose": 2.0, "gain": 1.8}
_DEFAULT_PROTEIN_PER_KG = 1.6
_FAT_ENERGY_SHARE = 0.30
_FIBER_PER_1000_KCAL = 14

# Nutrients tracked for coverage, in display order
NUTRIENTS: tuple[str, ...] = ("kcal", "protein", "carbs", "fat", "fiber")

# Coverage statuses, lowest to highest
LOW = "low"
MEDIUM = "medium"
OK = "ok"
HIGH = "high"
EXCESS = "excess"


class ProfileValidationError(ValueError):
    """Raised when a profile row or form payload is malformed."""
    pass


def _optional_positive(data: dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ProfileValidationError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ProfileValidationError(f"{key} must be a number, got {value!r}")
    if not math.isfinite(number) or number <= 0:
        raise ProfileValidationError(f"{key} must be a positive number")
    return number


@dataclass
class Profile:
    id: str
    name: str
    sex: str = "female"
    age_years: float | None = None
    weight_kg: float | None = None
    height_cm: float | None = None
    activity_level: str = "moderate"
    goal: str = "maintain"
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Profile":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ProfileValidationError("Profile name is required")

        sex = data.get("sex") or "female"
        if sex not in SEXES:
            raise ProfileValidationError(f"Unknown sex: {sex!r}")
        activity_level = data.get("activity_level") or "moderate"
        if activity_level not in ACTIVITY_FACTORS:
            raise ProfileValidationError(f"Unknown activity level: {activity_level!r}")
        goal = data.get("goal") or "maintain"
        if goal not in GOALS:
            raise ProfileValidationError(f"Unknown goal: {goal!r}")

        return cls(
            id=str(data.get("id") or ""),
            name=name,
            sex=sex,
            age_years=_optional_positive(data, "age_years"),
            weight_kg=_optional_positive(data, "weight_kg"),
            height_cm=_optional_positive(data, "height_cm"),
            activity_level=activity_level,
            goal=goal,
            is_active=data.get("is_active", True) is not False,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sex": self.sex,
            "age_years": self.age_years,
            "weight_kg": self.weight_kg,
            "height_cm": self.height_cm,
            "activity_level": self.activity_level,
            "goal": self.goal,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class NutritionTargets:
    ree: float
    tdee: float
    kcal: float
    protein: float
    carbs: float
    fat: float
    fiber: float

    def as_nutrients(self, days: int = 1) -> dict[str, float]:
        """Targets keyed by nutrient name, multiplied over *days* days."""
        return {nutrient: getattr(self, nutrient) * days for nutrient in NUTRIENTS}


def _usable(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def calculate_targets(profile: Profile) -> NutritionTargets | None:
    """Return daily targets for *profile*, or None when biometrics are missing."""
    weight, height, age = profile.weight_kg, profile.height_cm, profile.age_years
    if not (_usable(weight) and _usable(height) and _usable(age)):
        return None

    sex_offset = _SEX_OFFSET.get(profile.sex, _OTHER_SEX_OFFSET)
    ree = 10 * weight + 6.25 * height - 5 * age + sex_offset
    tdee = ree * ACTIVITY_FACTORS.get(profile.activity_level, ACTIVITY_FACTORS["moderate"])
    kcal = tdee * _GOAL_KCAL_FACTOR.get(profile.goal, 1.0)

    protein = weight * _GOAL_PROTEIN_PER_KG.get(profile.goal, _DEFAULT_PROTEIN_PER_KG)
    fat = kcal * _FAT_ENERGY_SHARE / 9
    remaining_kcal = max(kcal - protein * 4 - fat * 9, 0)
    carbs = remaining_kcal / 4
    fiber = kcal / 1000 * _FIBER_PER_1000_KCAL

    return NutritionTargets(
        ree=ree, tdee=tdee, kcal=kcal, protein=protein, carbs=carbs, fat=fat, fiber=fiber,
    )


def classify_coverage(ratio: float) -> str:
    """Bucket a consumed/target ratio into low/medium/ok/high/excess."""
    if not math.isfinite(ratio) or ratio <= 0:
        return LOW
    if ratio < 0.70:
        return LOW
    if ratio < 0.90:
        return MEDIUM
    if ratio <= 1.10:
        return OK
    if ratio <= 1.25:
        return HIGH
    return EXCESS


def nutrient_status(consumed: float, target: float | None) -> str:
    if target is None or not math.isfinite(target) or target <= 0:
        return LOW
    return classify_coverage(consumed / target)
