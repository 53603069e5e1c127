"""Pytest configuration and fixtures."""

from mealcycle.nutrition import Profile
from mealcycle.recipes import POOL, IngredientLine, Recipe


def create_test_recipe(
    recipe_id: str,
    name: str,
    kind: str = POOL,
    recipe_servings: int = 4,
    kcal: float = 500.0,
    protein: float = 25.0,
    carbs: float = 60.0,
    fat: float = 15.0,
    fiber: float = 6.0,
    ingredients: list | None = None,
    created_at: str | None = None,
) -> Recipe:
    """Helper to create a test Recipe.

    ``ingredients`` takes plain dicts (ingredient_name, quantity, unit,
    category and optionally ingredient_base); quantities are whole-recipe.
    """
    lines = [
        IngredientLine(
            ingredient_name=row["ingredient_name"],
            ingredient_base=row.get("ingredient_base", row["ingredient_name"].lower()),
            unit=row.get("unit", "g"),
            category=row.get("category", "Ingrediente"),
            quantity_recipe_total=row["quantity"],
        )
        for row in (ingredients or [])
    ]
    return Recipe(
        id=recipe_id,
        name=name,
        kind=kind,
        kcal=kcal,
        protein_g=protein,
        carbs_g=carbs,
        fat_g=fat,
        fiber_g=fiber,
        recipe_servings=recipe_servings,
        ingredients=lines,
        created_at=created_at,
    )


def create_test_profile(
    profile_id: str,
    name: str = "Ana",
    sex: str = "female",
    age_years: float | None = 30,
    weight_kg: float | None = 60,
    height_cm: float | None = 165,
    activity_level: str = "moderate",
    goal: str = "maintain",
    is_active: bool = True,
) -> Profile:
    """Helper to create a test Profile (defaults give complete biometrics)."""
    return Profile(
        id=profile_id,
        name=name,
        sex=sex,
        age_years=age_years,
        weight_kg=weight_kg,
        height_cm=height_cm,
        activity_level=activity_level,
        goal=goal,
        is_active=is_active,
    )
