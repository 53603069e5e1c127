import logging
import time
import uuid
from dataclasses import asdict
from datetime import date
from pathlib import Path

from flask import Flask, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFProtect, generate_csrf

from mealcycle import config
from mealcycle.coverage import daily_coverage, weekly_nutrition_by_profile
from mealcycle.ingredient_normalizer import CATEGORY_OPTIONS, UNIT_OPTIONS
from mealcycle.logging_config import configure_logging
from mealcycle.nutrition import Profile, ProfileValidationError, calculate_targets
from mealcycle.planner import (
    PlanSlot,
    SlotValidationError,
    change_slot_recipe,
    change_slot_servings,
    generate_plan_slots,
    next_monday,
    recipe_flags,
    regenerate_plan,
    regenerate_week,
    toggle_slot_out,
    week_index_for,
    week_monday_for,
)
from mealcycle.recipes import (
    KIND_LABELS,
    IngredientCatalogEntry,
    Recipe,
    RecipeCatalog,
    RecipeValidationError,
    build_ingredient_lines,
)
from mealcycle.repository import PlanConflictError, Repository
from mealcycle.sheets import SheetsError, SheetsWriter
from mealcycle.shopping_list import ShoppingValidationError, generate_shopping_list
from mealcycle.store import RecordNotFoundError, RecordStore, StoreError

configure_logging(config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["SECRET_KEY"] = config.SECRET_KEY
csrf = CSRFProtect(app)
limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[],          # no global limit; apply per-route only
    storage_uri="memory://",
)


def _repository() -> Repository:
    return Repository(RecordStore(config.STORE_FILE), config.OWNER_ID)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

@app.errorhandler(RecipeValidationError)
@app.errorhandler(ProfileValidationError)
@app.errorhandler(SlotValidationError)
@app.errorhandler(ShoppingValidationError)
def handle_validation_error(e):
    return jsonify({"error": "Validation error", "message": str(e)}), 400


@app.errorhandler(PlanConflictError)
def handle_plan_conflict(e):
    return jsonify({"error": "Conflict", "message": str(e)}), 409


@app.errorhandler(RecordNotFoundError)
def handle_record_not_found(e):
    return jsonify({"error": "Not found", "message": str(e)}), 404


@app.errorhandler(StoreError)
def handle_store_error(e):
    logger.exception("Record store error")
    return jsonify({"error": "Store error", "message": str(e)}), 500


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise SlotValidationError("Request body must be a JSON object")
    return data


def _json_bool(data: dict, key: str, default: bool | None = None) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise SlotValidationError(f"{key} must be true or false")
    return value


def _parse_monday(value: str) -> date:
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise SlotValidationError(f"Invalid date: {value!r}")
    if parsed.weekday() != 0:
        raise SlotValidationError(f"{value} is not a Monday")
    return parsed


def _parse_seed(value) -> int:
    if value is None or value == "":
        return int(time.time() * 1000)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SlotValidationError(f"seed must be an integer, got {value!r}")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize_recipe(recipe: Recipe) -> dict:
    data = recipe.to_dict()
    data["kind_label"] = KIND_LABELS[recipe.kind]
    data["flags"] = asdict(recipe_flags(recipe))
    return data


def _serialize_slot(slot: PlanSlot, catalog: RecipeCatalog, start_monday: date) -> dict:
    data = slot.to_dict()
    recipe = catalog.get(slot.recipe_id)
    data["recipe_name"] = recipe.name if recipe else None
    data["week_index"] = week_index_for(start_monday, slot.slot_date)
    return data


def _serialize_profile(profile: Profile) -> dict:
    data = profile.to_dict()
    targets = calculate_targets(profile)
    data["targets"] = asdict(targets) if targets else None
    return data


def _serialize_plan(start_monday: date, slots: list[PlanSlot], catalog: RecipeCatalog, cycle=None) -> dict:
    return {
        "start_monday": start_monday.isoformat(),
        "cycle": cycle.to_dict() if cycle else None,
        "slots": [_serialize_slot(slot, catalog, start_monday) for slot in slots],
    }


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/csrf-token")
def csrf_token():
    """Token to send back in the X-CSRFToken header on mutating requests."""
    return jsonify({"csrf_token": generate_csrf()})


@app.route("/settings", methods=["GET"])
def get_settings():
    repo = _repository()
    return jsonify({
        "default_servings": repo.get_default_servings(),
        "next_monday": next_monday(date.today()).isoformat(),
        "unit_options": UNIT_OPTIONS,
        "category_options": CATEGORY_OPTIONS,
    })


@app.route("/settings", methods=["PUT"])
def update_settings():
    logger.info("Updating settings")
    data = _json_body()
    repo = _repository()
    default_servings = repo.set_default_servings(data.get("default_servings"))
    return jsonify({"success": True, "default_servings": default_servings})


# -- recipes ------------------------------------------------------------------

@app.route("/recipes", methods=["GET"])
def list_recipes():
    logger.debug("Listing recipes")
    recipes = _repository().load_recipes()

    kind = request.args.get("kind", "")
    search = request.args.get("search", "").strip().lower()
    if kind:
        recipes = [r for r in recipes if r.kind == kind]
    if search:
        recipes = [r for r in recipes if search in r.name.lower()]

    return jsonify({"recipes": [_serialize_recipe(r) for r in recipes]})


def _recipe_from_payload(data: dict, recipe_id: str, catalog: RecipeCatalog, created_at: str | None = None) -> Recipe:
    """Validate a recipe form payload; incomplete ingredient rows are dropped."""
    recipe = Recipe.from_dict({
        **{key: data.get(key) for key in (
            "name", "meal_type", "kcal", "protein_g", "carbs_g", "fat_g", "fiber_g",
            "recipe_servings", "prep_minutes", "notes",
        )},
        "id": recipe_id,
        "created_at": created_at,
    })
    recipe.ingredients = build_ingredient_lines(data.get("ingredients") or [], catalog)
    return recipe


@app.route("/recipes", methods=["POST"])
def create_recipe():
    logger.info("Creating recipe")
    data = _json_body()
    repo = _repository()
    recipe = _recipe_from_payload(data, str(uuid.uuid4()), repo.load_catalog())
    saved = repo.save_recipe(recipe)
    return jsonify({"success": True, "recipe": _serialize_recipe(saved)}), 201


@app.route("/recipes/<recipe_id>", methods=["GET"])
def get_recipe(recipe_id: str):
    logger.debug("Fetching recipe", extra={"recipe_id": recipe_id})
    recipe = _repository().get_recipe(recipe_id)
    if recipe is None:
        return jsonify({"error": "Not found", "message": f"Recipe not found: {recipe_id}"}), 404
    return jsonify(_serialize_recipe(recipe))


@app.route("/recipes/<recipe_id>", methods=["PUT"])
def update_recipe(recipe_id: str):
    logger.info("Updating recipe", extra={"recipe_id": recipe_id})
    data = _json_body()
    repo = _repository()
    existing = repo.get_recipe(recipe_id)
    if existing is None:
        return jsonify({"error": "Not found", "message": f"Recipe not found: {recipe_id}"}), 404
    recipe = _recipe_from_payload(data, recipe_id, repo.load_catalog(), created_at=existing.created_at)
    saved = repo.save_recipe(recipe)
    return jsonify({"success": True, "recipe": _serialize_recipe(saved)})


@app.route("/recipes/<recipe_id>", methods=["DELETE"])
def delete_recipe(recipe_id: str):
    logger.info("Deleting recipe", extra={"recipe_id": recipe_id})
    if not _repository().delete_recipe(recipe_id):
        return jsonify({"error": "Not found", "message": f"Recipe not found: {recipe_id}"}), 404
    return jsonify({"success": True})


# -- ingredient catalog -------------------------------------------------------

@app.route("/ingredient-catalog", methods=["GET"])
def list_ingredient_catalog():
    entries = _repository().load_ingredient_catalog()
    return jsonify({"entries": [entry.to_dict() for entry in entries]})


@app.route("/ingredient-catalog", methods=["POST"])
def save_ingredient_catalog_entry():
    logger.info("Saving ingredient catalog entry")
    data = _json_body()
    entry = IngredientCatalogEntry.from_dict({**data, "id": None, "is_active": data.get("is_active", True)})
    saved = _repository().save_catalog_entry(entry)
    return jsonify({"success": True, "entry": saved.to_dict()}), 201


@app.route("/ingredient-catalog/<entry_id>", methods=["DELETE"])
def delete_ingredient_catalog_entry(entry_id: str):
    if not _repository().delete_catalog_entry(entry_id):
        return jsonify({"error": "Not found", "message": f"Catalog entry not found: {entry_id}"}), 404
    return jsonify({"success": True})


@app.route("/ingredient-catalog/defaults")
def ingredient_defaults():
    """Unit and category to pre-fill for a new ingredient line."""
    base = request.args.get("base", "")
    defaults = _repository().load_catalog().resolve_defaults(base)
    return jsonify({"defaults": asdict(defaults) if defaults else None})


@app.route("/ingredient-catalog/suggest")
def suggest_ingredients():
    query = request.args.get("q", "")
    limit = request.args.get("limit", 5, type=int)
    return jsonify({"suggestions": _repository().load_catalog().suggest_ingredients(query, limit=limit)})


# -- profiles -----------------------------------------------------------------

@app.route("/profiles", methods=["GET"])
def list_profiles():
    profiles = _repository().load_profiles()
    return jsonify({"profiles": [_serialize_profile(p) for p in profiles]})


@app.route("/profiles", methods=["POST"])
def create_profile():
    logger.info("Creating profile")
    profile = Profile.from_dict({**_json_body(), "id": None})
    saved = _repository().save_profile(profile)
    return jsonify({"success": True, "profile": _serialize_profile(saved)}), 201


@app.route("/profiles/<profile_id>", methods=["PUT"])
def update_profile(profile_id: str):
    logger.info("Updating profile", extra={"profile_id": profile_id})
    repo = _repository()
    if not any(p.id == profile_id for p in repo.load_profiles()):
        return jsonify({"error": "Not found", "message": f"Profile not found: {profile_id}"}), 404
    profile = Profile.from_dict({**_json_body(), "id": profile_id})
    saved = repo.save_profile(profile)
    return jsonify({"success": True, "profile": _serialize_profile(saved)})


@app.route("/profiles/<profile_id>", methods=["DELETE"])
def delete_profile(profile_id: str):
    if not _repository().delete_profile(profile_id):
        return jsonify({"error": "Not found", "message": f"Profile not found: {profile_id}"}), 404
    return jsonify({"success": True})


# -- plans --------------------------------------------------------------------

@app.route("/plans", methods=["GET"])
def list_plans():
    """Saved plan cycles, most recent first."""
    cycles = _repository().list_cycles()
    return jsonify({"plans": [cycle.to_dict() for cycle in cycles]})


@app.route("/plans/<start_monday>", methods=["GET"])
def get_plan(start_monday: str):
    """Load a plan: freshly generated slots with any saved edits overlaid."""
    start = _parse_monday(start_monday)
    seed = request.args.get("seed", 0, type=int)
    repo = _repository()
    catalog = repo.load_catalog()

    cycle = repo.find_cycle(start)
    persisted = repo.load_slots(cycle.id) if cycle else None
    slots = generate_plan_slots(catalog, start, seed, persisted=persisted)
    return jsonify(_serialize_plan(start, slots, catalog, cycle))


@app.route("/plans/<start_monday>/regenerate", methods=["POST"])
@limiter.limit("30 per minute")
def regenerate(start_monday: str):
    """Regenerate the whole plan with a new seed, discarding edits (not saved)."""
    start = _parse_monday(start_monday)
    data = request.get_json(silent=True) or {}
    seed = _parse_seed(data.get("seed"))
    logger.info("Regenerating plan", extra={"start_monday": start_monday, "seed": seed})

    catalog = _repository().load_catalog()
    slots = regenerate_plan(catalog, start, seed)
    return jsonify({**_serialize_plan(start, slots, catalog), "seed": seed})


@app.route("/plans/<start_monday>/weeks/<int:week_index>/regenerate", methods=["POST"])
@limiter.limit("30 per minute")
def regenerate_plan_week(start_monday: str, week_index: int):
    """Regenerate one week of the working plan (not saved).

    The body may carry the caller's current ``slots``; otherwise the saved
    plan (or a fresh one) is used as the starting point.
    """
    start = _parse_monday(start_monday)
    data = request.get_json(silent=True) or {}
    seed = _parse_seed(data.get("seed"))
    logger.info("Regenerating plan week", extra={"start_monday": start_monday, "week_index": week_index})

    repo = _repository()
    catalog = repo.load_catalog()
    if data.get("slots") is not None:
        current = [PlanSlot.from_dict(row) for row in data["slots"]]
    else:
        cycle = repo.find_cycle(start)
        persisted = repo.load_slots(cycle.id) if cycle else None
        current = generate_plan_slots(catalog, start, 0, persisted=persisted)

    slots = regenerate_week(current, catalog, start, week_index, seed)
    return jsonify({**_serialize_plan(start, slots, catalog), "seed": seed})


@app.route("/plans/<start_monday>", methods=["PUT"])
def save_plan(start_monday: str):
    """Replace the saved slots of a plan."""
    start = _parse_monday(start_monday)
    data = _json_body()
    if not isinstance(data.get("slots"), list):
        raise SlotValidationError("slots must be a list")

    slots = [PlanSlot.from_dict(row) for row in data["slots"]]
    repo = _repository()
    cycle = repo.save_plan(start, slots, expected_revision=data.get("expected_revision"))
    return jsonify({"success": True, "cycle": cycle.to_dict()})


@app.route("/plans/<start_monday>/slots/<slot_date>/<slot_name>", methods=["PATCH"])
def edit_slot(start_monday: str, slot_date: str, slot_name: str):
    """Edit one slot of a plan and save it.

    Body keys (any combination): ``is_out``, ``recipe_id``, ``servings_override``.
    """
    start = _parse_monday(start_monday)
    try:
        key = (date.fromisoformat(slot_date), slot_name)
    except ValueError:
        raise SlotValidationError(f"Invalid slot_date: {slot_date!r}")
    data = _json_body()

    repo = _repository()
    catalog = repo.load_catalog()
    cycle = repo.find_cycle(start)
    persisted = repo.load_slots(cycle.id) if cycle else None
    slots = generate_plan_slots(catalog, start, 0, persisted=persisted)

    if "is_out" in data:
        slots = toggle_slot_out(slots, key, _json_bool(data, "is_out"), catalog)
    if "recipe_id" in data:
        slots = change_slot_recipe(slots, key, data["recipe_id"] or None, catalog)
    if "servings_override" in data:
        slots = change_slot_servings(slots, key, data["servings_override"])

    cycle = repo.save_plan(start, slots, expected_revision=data.get("expected_revision"))
    edited = next(slot for slot in slots if slot.key == key)
    return jsonify({
        "success": True,
        "cycle": cycle.to_dict(),
        "slot": _serialize_slot(edited, catalog, start),
    })


def _saved_plan(repo: Repository, start: date):
    cycle = repo.find_cycle(start)
    if cycle is None:
        return None, []
    return cycle, repo.load_slots(cycle.id)


@app.route("/plans/<start_monday>/weeks/<int:week_offset>/shopping-list", methods=["GET"])
def get_shopping_list(start_monday: str, week_offset: int):
    """Aggregated ingredients for one week of the saved plan plus manual extras."""
    start = _parse_monday(start_monday)
    repo = _repository()
    cycle, slots = _saved_plan(repo, start)
    if cycle is None:
        return jsonify({"error": "Not found", "message": f"No saved plan for {start_monday}"}), 404

    shopping_list = generate_shopping_list(
        slots, repo.load_catalog(), start, week_offset, default_servings=repo.get_default_servings(),
    )
    shopping_list.manual_items = repo.list_manual_items(shopping_list.week_monday)
    return jsonify({
        "week_monday": shopping_list.week_monday.isoformat(),
        "items": [item.to_dict() for item in shopping_list.items],
        "manual_items": [item.to_dict() for item in shopping_list.manual_items],
    })


@app.route("/plans/<start_monday>/weeks/<int:week_offset>/shopping-list/items", methods=["POST"])
def add_shopping_item(start_monday: str, week_offset: int):
    logger.info("Adding manual shopping item")
    start = _parse_monday(start_monday)
    data = _json_body()
    repo = _repository()
    cycle = repo.find_cycle(start)
    item = repo.add_manual_item(
        week_monday_for(start, week_offset), data, plan_cycle_id=cycle.id if cycle else None,
    )
    return jsonify({"success": True, "item": item.to_dict()}), 201


@app.route("/shopping-items/<item_id>/check", methods=["POST"])
def check_shopping_item(item_id: str):
    data = _json_body()
    item = _repository().set_manual_item_checked(item_id, _json_bool(data, "is_checked", True))
    return jsonify({"success": True, "item": item.to_dict()})


@app.route("/shopping-items/<item_id>", methods=["DELETE"])
def delete_shopping_item(item_id: str):
    logger.info("Deleting manual shopping item", extra={"item_id": item_id})
    if not _repository().delete_manual_item(item_id):
        return jsonify({"error": "Not found", "message": f"Shopping item not found: {item_id}"}), 404
    return jsonify({"success": True})


@app.route("/plans/<start_monday>/weeks/<int:week_offset>/coverage", methods=["GET"])
def get_weekly_coverage(start_monday: str, week_offset: int):
    """Weekly consumed-vs-target nutrition per active profile."""
    start = _parse_monday(start_monday)
    repo = _repository()
    _cycle, slots = _saved_plan(repo, start)

    rows = weekly_nutrition_by_profile(
        slots, repo.load_catalog(), repo.load_profiles(), start, week_offset,
        default_servings=repo.get_default_servings(),
    )
    return jsonify({
        "week_monday": week_monday_for(start, week_offset).isoformat(),
        "profiles": [
            {
                "profile": _serialize_profile(row.profile),
                "consumed": row.consumed,
                "weekly_target": row.weekly_target,
                "statuses": row.statuses,
            }
            for row in rows
        ],
    })


@app.route("/plans/<start_monday>/weeks/<int:week_offset>/coverage/daily", methods=["GET"])
def get_daily_coverage(start_monday: str, week_offset: int):
    """Day-by-day coverage for one profile (defaults to the first active one)."""
    start = _parse_monday(start_monday)
    repo = _repository()
    _cycle, slots = _saved_plan(repo, start)

    days = daily_coverage(
        slots, repo.load_catalog(), repo.load_profiles(), start, week_offset,
        profile_id=request.args.get("profile_id"),
        default_servings=repo.get_default_servings(),
    )
    return jsonify({
        "week_monday": week_monday_for(start, week_offset).isoformat(),
        "days": [
            {
                "day": day.day.isoformat(),
                "consumed": day.consumed,
                "target": day.target,
                "balance": day.balance,
                "status": day.status,
                "coverage_percent": day.coverage_percent,
                "nutrient_statuses": day.nutrient_statuses,
                "slot_details": [
                    {
                        "slot_name": detail.slot_name,
                        "label": detail.label,
                        "recipe_name": detail.recipe_name,
                        **detail.nutrients,
                    }
                    for detail in day.slot_details
                ],
            }
            for day in days
        ],
    })


@app.route("/plans/<start_monday>/write-to-sheets", methods=["POST"])
@limiter.limit("5 per minute")
def write_to_sheets(start_monday: str):
    """Write the saved plan and one week's shopping list to Google Sheets."""
    logger.info("Writing plan to Google Sheets", extra={"start_monday": start_monday})
    start = _parse_monday(start_monday)
    week_offset = request.args.get("week_offset", 0, type=int)
    repo = _repository()
    cycle, slots = _saved_plan(repo, start)
    if cycle is None:
        return jsonify({
            "success": False,
            "message": "No saved plan yet. Save the plan first."
        }), 400

    creds_path = Path(config.CREDENTIALS_FILE)
    if not creds_path.exists():
        return jsonify({
            "success": False,
            "message": "Google Sheets credentials not configured. See README for setup instructions."
        }), 400

    catalog = repo.load_catalog()
    default_servings = repo.get_default_servings()
    shopping_list = generate_shopping_list(slots, catalog, start, week_offset, default_servings=default_servings)
    shopping_list.manual_items = repo.list_manual_items(shopping_list.week_monday)

    try:
        writer = SheetsWriter(
            credentials_file=config.CREDENTIALS_FILE,
            spreadsheet_id=config.GOOGLE_SHEETS_ID
        )
        result = writer.write_all(slots, catalog, start, shopping_list, default_servings=default_servings)
        return jsonify(result)
    except SheetsError as e:
        logger.exception("Google Sheets write error")
        return jsonify({
            "success": False,
            "message": f"Error writing to Google Sheets: {str(e)}"
        }), 500


if __name__ == "__main__":
    import os
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") != "production"
    app.run(host="0.0.0.0", port=port, debug=debug)
