from datetime import date, timedelta

import pytest

from mealcycle.planner import (
    SLOT_DEFINITIONS_BY_NAME,
    STATUS_FIXED,
    STATUS_OUT,
    STATUS_RECIPE,
    WEEK_SLOT_DEFINITIONS,
    PlanSlot,
    SlotPlanner,
    SlotValidationError,
    change_slot_recipe,
    change_slot_servings,
    generate_plan_slots,
    merge_persisted_slots,
    next_monday,
    recipe_flags,
    regenerate_plan,
    regenerate_week,
    stable_hash,
    tie_break_hash,
    toggle_slot_out,
    week_index_for,
)
from mealcycle.recipes import PASTA_FIXED, PIZZA_FIXED, POOL, RecipeCatalog
from tests.conftest import create_test_recipe

START = date(2024, 1, 1)  # a Monday


def _plain_recipes(count):
    return [create_test_recipe(f"plain-{i:02d}", f"Plato {i:02d}") for i in range(count)]


def _fixed_recipes():
    return [
        create_test_recipe("pizza-1", "Pizza margarita", kind=PIZZA_FIXED),
        create_test_recipe("pizza-2", "Pizza cuatro quesos", kind=PIZZA_FIXED),
        create_test_recipe("pasta-1", "Espaguetis carbonara", kind=PASTA_FIXED),
    ]


def _pool_slots(slots):
    return [s for s in slots if s.kind == POOL]


def _weeks(slots):
    weeks = {}
    for slot in slots:
        weeks.setdefault(week_index_for(START, slot.slot_date), []).append(slot)
    return weeks


@pytest.fixture
def catalog():
    return RecipeCatalog(_fixed_recipes() + _plain_recipes(14))


@pytest.fixture
def rules_catalog():
    """Plain recipes plus risotto, rice and beef dishes."""
    flagged = [
        create_test_recipe("risotto-1", "Risotto de setas"),
        create_test_recipe("risotto-2", "Risotto de calabaza"),
        create_test_recipe("rice-1", "Arroz al horno"),
        create_test_recipe("rice-2", "Paella de verduras", ingredients=[
            {"ingredient_name": "Arroz bomba", "ingredient_base": "arroz bomba", "quantity": 320},
        ]),
        create_test_recipe("beef-1", "Ternera guisada"),
        create_test_recipe("beef-2", "Albóndigas", ingredients=[
            {"ingredient_name": "Carne picada de ternera", "ingredient_base": "carne ternera", "quantity": 500},
        ]),
    ]
    return RecipeCatalog(_fixed_recipes() + flagged + _plain_recipes(12))


class TestGeneratePlanSlots:
    def test_generates_four_weeks_of_the_template(self, catalog):
        slots = generate_plan_slots(catalog, START, seed=0)

        assert len(slots) == 4 * len(WEEK_SLOT_DEFINITIONS)
        assert slots[0].slot_date == START
        assert slots[0].slot_name == "mon_dinner"
        assert slots[-1].slot_name == "sun_dinner"
        assert slots[-1].slot_date == START + timedelta(days=27)

    def test_slot_dates_follow_the_template(self, catalog):
        slots = generate_plan_slots(catalog, START, seed=0)

        for slot in slots:
            definition = SLOT_DEFINITIONS_BY_NAME[slot.slot_name]
            week_index = week_index_for(START, slot.slot_date)
            assert 0 <= week_index < 4
            assert slot.slot_date == START + timedelta(days=7 * week_index + definition.day_offset)
            assert slot.label == definition.label
            assert slot.kind == definition.kind

    def test_is_deterministic(self, rules_catalog):
        first = generate_plan_slots(rules_catalog, START, seed=42)
        second = generate_plan_slots(rules_catalog, START, seed=42)

        assert first == second

    def test_rejects_start_that_is_not_monday(self, catalog):
        with pytest.raises(SlotValidationError):
            generate_plan_slots(catalog, START + timedelta(days=2))

    def test_fixed_slots_use_first_recipe_of_their_kind(self, catalog):
        slots = generate_plan_slots(catalog, START)

        pizza = [s for s in slots if s.slot_name == "fri_dinner_pizza"]
        pasta = [s for s in slots if s.slot_name == "sat_lunch_pasta"]
        assert len(pizza) == len(pasta) == 4
        assert all(s.recipe_id == "pizza-1" and s.status == STATUS_FIXED for s in pizza)
        assert all(s.recipe_id == "pasta-1" and s.status == STATUS_FIXED for s in pasta)
        assert all(s.status == STATUS_RECIPE for s in _pool_slots(slots))

    def test_missing_fixed_recipe_leaves_slot_empty(self):
        catalog = RecipeCatalog(_plain_recipes(14))
        slots = generate_plan_slots(catalog, START)

        pizza = [s for s in slots if s.slot_name == "fri_dinner_pizza"]
        assert all(s.recipe_id is None for s in pizza)
        assert all(s.recipe_id is not None for s in _pool_slots(slots))

    def test_empty_pool_leaves_pool_slots_empty(self):
        slots = generate_plan_slots(RecipeCatalog(_fixed_recipes()), START)

        assert all(s.recipe_id is None for s in _pool_slots(slots))
        assert {s.recipe_id for s in slots if s.kind == PIZZA_FIXED} == {"pizza-1"}

    def test_spreads_usage_and_respects_cooldown(self, catalog):
        generation = SlotPlanner(catalog).generate(START, seed=7)

        uses = {}
        for slot in _pool_slots(generation.slots):
            uses.setdefault(slot.recipe_id, []).append(slot.slot_date)

        # 28 pool slots over 14 recipes: each one exactly twice
        assert sorted(len(d) for d in uses.values()) == [2] * 14
        for dates in uses.values():
            assert (dates[1] - dates[0]).days >= 10
        assert generation.relaxed_slots == []

    def test_weekly_risotto_and_rice_caps(self, rules_catalog):
        generation = SlotPlanner(rules_catalog).generate(START, seed=3)
        flags = {r.id: recipe_flags(r) for r in rules_catalog.recipes}

        risotto_total = 0
        for week_slots in _weeks(generation.slots).values():
            chosen = [flags[s.recipe_id] for s in week_slots if s.recipe_id]
            risottos = sum(f.is_risotto for f in chosen)
            risotto_total += risottos
            assert risottos <= 1
            assert sum(f.has_rice for f in chosen) <= 2
        assert risotto_total >= 1
        assert generation.relaxed_slots == []

    def test_no_beef_on_consecutive_days_within_a_week(self, rules_catalog):
        for seed in range(5):
            slots = generate_plan_slots(rules_catalog, START, seed=seed)
            for week_slots in _weeks(slots).values():
                beef_dates = {
                    s.slot_date for s in week_slots
                    if recipe_flags(rules_catalog.get(s.recipe_id)).has_beef
                }
                for beef_date in beef_dates:
                    assert beef_date - timedelta(days=1) not in beef_dates

    def test_single_recipe_pool_relaxes_rules(self):
        catalog = RecipeCatalog(_fixed_recipes() + [create_test_recipe("only", "Tortilla de patatas")])
        generation = SlotPlanner(catalog).generate(START)

        pool = _pool_slots(generation.slots)
        assert all(s.recipe_id == "only" for s in pool)
        assert len(generation.relaxed_slots) == len(pool) - 1
        assert generation.usage.count("only") == len(pool)

    def test_rice_only_pool_still_fills_every_slot(self):
        catalog = RecipeCatalog([
            create_test_recipe("arroz-1", "Arroz con pollo"),
            create_test_recipe("arroz-2", "Arroz negro"),
            create_test_recipe("arroz-3", "Arroz a la cubana"),
        ])
        slots = generate_plan_slots(catalog, START, seed=1)

        assert all(s.recipe_id is not None for s in _pool_slots(slots))

    def test_custom_horizon(self, catalog):
        slots = generate_plan_slots(catalog, START, weeks_count=2)
        assert len(slots) == 2 * len(WEEK_SLOT_DEFINITIONS)


class TestTieBreak:
    def test_stable_hash_values(self):
        assert stable_hash("") == 0
        assert stable_hash("a") == 97
        assert stable_hash("ab") == 97 * 31 + 98

    def test_stable_hash_stays_unsigned_32_bit(self):
        value = stable_hash("x" * 200)
        assert 0 <= value < 2 ** 32

    def test_tie_break_hash_format(self):
        assert tie_break_hash("r1", START, 5) == stable_hash("r1|2024-01-01|5")

    def test_first_pick_is_lowest_hash(self):
        pool = _plain_recipes(5)
        catalog = RecipeCatalog(pool)

        for seed in (0, 1, 99):
            slots = generate_plan_slots(catalog, START, seed=seed)
            expected = min(pool, key=lambda r: (tie_break_hash(r.id, START, seed), r.name))
            assert slots[0].recipe_id == expected.id


class TestRecipeFlags:
    def test_risotto_counts_as_rice(self):
        flags = recipe_flags(create_test_recipe("r", "Risotto de setas"))
        assert flags.is_risotto and flags.has_rice and not flags.has_beef

    def test_rice_and_beef_from_ingredients(self):
        recipe = create_test_recipe("r", "Cazuela", ingredients=[
            {"ingredient_name": "Arroz", "ingredient_base": "arroz", "quantity": 300},
            {"ingredient_name": "Ternera", "ingredient_base": "ternera", "quantity": 400},
        ])
        flags = recipe_flags(recipe)
        assert flags.has_rice and flags.has_beef and not flags.is_risotto

    def test_no_recipe(self):
        assert recipe_flags(None) == recipe_flags(create_test_recipe("r", "Ensalada"))


class TestPersistedSlots:
    def test_merge_overlays_saved_values(self, catalog):
        fresh = generate_plan_slots(catalog, START)
        saved = [
            PlanSlot.from_dict({"slot_date": "2024-01-02", "slot_name": "tue_dinner", "status": "out"}),
            PlanSlot.from_dict({
                "slot_date": "2024-01-03", "slot_name": "wed_dinner", "status": "recipe",
                "recipe_id": "plain-13", "servings_override": 5,
            }),
            # Outside the horizon: dropped
            PlanSlot.from_dict({"slot_date": "2024-03-04", "slot_name": "mon_dinner", "recipe_id": "plain-01"}),
        ]
        merged = merge_persisted_slots(fresh, saved)
        by_key = {s.key: s for s in merged}

        assert len(merged) == len(fresh)
        tuesday = by_key[(date(2024, 1, 2), "tue_dinner")]
        assert tuesday.status == STATUS_OUT and tuesday.recipe_id is None
        wednesday = by_key[(date(2024, 1, 3), "wed_dinner")]
        assert wednesday.recipe_id == "plain-13"
        assert wednesday.servings_override == 5
        assert wednesday.label == "Mie cena"
        assert (date(2024, 3, 4), "mon_dinner") not in by_key

    def test_generate_with_persisted(self, catalog):
        saved = [PlanSlot.from_dict({"slot_date": "2024-01-01", "slot_name": "mon_dinner", "status": "out"})]
        slots = generate_plan_slots(catalog, START, persisted=saved)
        assert slots[0].status == STATUS_OUT

    def test_regenerate_plan_discards_overrides(self, catalog):
        assert regenerate_plan(catalog, START, seed=9) == generate_plan_slots(catalog, START, seed=9)

    def test_from_dict_rejects_unknown_slot(self):
        with pytest.raises(SlotValidationError):
            PlanSlot.from_dict({"slot_date": "2024-01-01", "slot_name": "brunch"})

    def test_from_dict_rejects_bad_date(self):
        with pytest.raises(SlotValidationError):
            PlanSlot.from_dict({"slot_date": "yesterday", "slot_name": "mon_dinner"})

    def test_out_slot_never_carries_a_recipe(self):
        slot = PlanSlot.from_dict({
            "slot_date": "2024-01-01", "slot_name": "mon_dinner", "status": "out", "recipe_id": "plain-01",
        })
        assert slot.recipe_id is None
        assert slot.to_dict()["recipe_id"] is None


class TestRegenerateWeek:
    def test_only_the_chosen_week_changes(self, rules_catalog):
        current = generate_plan_slots(rules_catalog, START, seed=0)
        result = regenerate_week(current, rules_catalog, START, week_index=1, seed=77)
        reference = {s.key: s for s in generate_plan_slots(rules_catalog, START, seed=77)}

        assert len(result) == len(current)
        for before, after in zip(current, result):
            if week_index_for(START, before.slot_date) == 1:
                assert after == reference[after.key]
            else:
                assert after == before

    def test_is_idempotent(self, rules_catalog):
        current = generate_plan_slots(rules_catalog, START, seed=0)
        once = regenerate_week(current, rules_catalog, START, week_index=2, seed=5)
        twice = regenerate_week(once, rules_catalog, START, week_index=2, seed=5)
        assert once == twice

    def test_keeps_edits_in_other_weeks(self, catalog):
        current = generate_plan_slots(catalog, START)
        current = toggle_slot_out(current, (START, "mon_dinner"), True, catalog)
        result = regenerate_week(current, catalog, START, week_index=3, seed=1)
        assert result[0].status == STATUS_OUT

    @pytest.mark.parametrize("week_index", [-1, 4])
    def test_rejects_out_of_range_week(self, catalog, week_index):
        current = generate_plan_slots(catalog, START)
        with pytest.raises(SlotValidationError):
            regenerate_week(current, catalog, START, week_index=week_index, seed=1)


class TestSlotEdits:
    @pytest.fixture
    def slots(self, catalog):
        return generate_plan_slots(catalog, START)

    def test_toggle_out_clears_recipe(self, slots, catalog):
        key = (START, "mon_dinner")
        edited = toggle_slot_out(slots, key, True, catalog)

        assert edited[0].status == STATUS_OUT
        assert edited[0].recipe_id is None
        # Original sequence untouched
        assert slots[0].status == STATUS_RECIPE

    def test_toggle_back_assigns_first_recipe_of_kind(self, slots, catalog):
        pizza_key = (START + timedelta(days=4), "fri_dinner_pizza")
        edited = toggle_slot_out(slots, pizza_key, True, catalog)
        edited = toggle_slot_out(edited, pizza_key, False, catalog)
        pizza = next(s for s in edited if s.key == pizza_key)

        assert pizza.status == STATUS_FIXED
        assert pizza.recipe_id == "pizza-1"

        edited = toggle_slot_out(slots, (START, "mon_dinner"), True, catalog)
        edited = toggle_slot_out(edited, (START, "mon_dinner"), False, catalog)
        assert edited[0].status == STATUS_RECIPE
        assert edited[0].recipe_id == "plain-00"

    def test_change_recipe(self, slots, catalog):
        pizza_key = (START + timedelta(days=4), "fri_dinner_pizza")
        edited = change_slot_recipe(slots, pizza_key, "pizza-2", catalog)
        assert next(s for s in edited if s.key == pizza_key).recipe_id == "pizza-2"

    def test_change_recipe_rejects_other_kind(self, slots, catalog):
        with pytest.raises(SlotValidationError):
            change_slot_recipe(slots, (START, "mon_dinner"), "pizza-2", catalog)

    def test_change_recipe_rejects_unknown_recipe(self, slots, catalog):
        with pytest.raises(SlotValidationError):
            change_slot_recipe(slots, (START, "mon_dinner"), "nope", catalog)

    def test_change_recipe_rejects_out_slot(self, slots, catalog):
        key = (START, "mon_dinner")
        edited = toggle_slot_out(slots, key, True, catalog)
        with pytest.raises(SlotValidationError):
            change_slot_recipe(edited, key, "plain-03", catalog)

    def test_change_recipe_to_none_clears(self, slots, catalog):
        edited = change_slot_recipe(slots, (START, "mon_dinner"), None, catalog)
        assert edited[0].recipe_id is None
        assert edited[0].is_planned is False

    @pytest.mark.parametrize("value,expected", [("4", 4), (6, 6), (2.0, 2), ("", None), (None, None)])
    def test_change_servings(self, slots, value, expected):
        edited = change_slot_servings(slots, (START, "mon_dinner"), value)
        assert edited[0].servings_override == expected
        assert edited[0].servings(3) == (expected or 3)

    @pytest.mark.parametrize("value", [0, -2, 2.5, "many", True])
    def test_change_servings_rejects_invalid(self, slots, value):
        with pytest.raises(SlotValidationError):
            change_slot_servings(slots, (START, "mon_dinner"), value)

    def test_edit_unknown_slot(self, slots):
        with pytest.raises(SlotValidationError):
            change_slot_servings(slots, (START, "fri_dinner"), 2)


class TestNextMonday:
    @pytest.mark.parametrize("today,expected", [
        (date(2024, 1, 3), date(2024, 1, 8)),
        (date(2024, 1, 8), date(2024, 1, 15)),
        (date(2024, 1, 14), date(2024, 1, 15)),
    ])
    def test_next_monday(self, today, expected):
        assert next_monday(today) == expected
