"""
Canonical keys for free-text ingredient names and units.

Recipes are typed by hand in Spanish, so the same ingredient shows up as
"Cebollas picadas", "cebolla (grande)" or "Cebolla, en juliana".  The
functions here collapse those into one stable base name so the shopping
list can aggregate them, and map unit spellings onto a short canonical set.
"""

import re
import unicodedata


# Size/cut descriptors and grammatical filler dropped from ingredient names.
DESCRIPTOR_WORDS: frozenset[str] = frozenset({
    "cortado", "cortada", "cortados", "cortadas",
    "picado", "picada", "picados", "picadas",
    "pelado", "pelada", "pelados", "peladas",
    "dados", "trozos", "rodajas",
    "grande", "grandes",
    "fino", "fina", "finos", "finas",
    "en", "con", "sin", "y", "al",
    "la", "el", "los", "las",
})

UNIT_SYNONYMS: dict[str, str] = {
    "gr": "g", "gramo": "g", "gramos": "g",
    "kilo": "kg", "kilos": "kg",
    "unidad": "unidad", "unidades": "unidad", "ud": "unidad", "uds": "unidad",
    "cc": "ml", "ccs": "ml",
}

DEFAULT_UNIT = "unidad"
FALLBACK_NAME = "ingrediente"

# Units offered when entering an ingredient line by hand
UNIT_OPTIONS = ["g", "kg", "ml", "l", "unidad", "cucharada", "cucharadita", "taza", "pizca"]

DEFAULT_CATEGORY = "Ingrediente"
SPICE_CATEGORY = "Especias"
CATEGORY_OPTIONS = [DEFAULT_CATEGORY, SPICE_CATEGORY]

# Category shown for shopping rows whose ingredient line carries none
UNCATEGORISED = "General"

_MAX_NAME_TOKENS = 4
_PARENTHESISED = re.compile(r"\(.*?\)")


def strip_accents(value: str) -> str:
    """Remove diacritics (jalapeño → jalapeno, limón → limon)."""
    nfd = unicodedata.normalize("NFD", value)
    return "".join(c for c in nfd if not unicodedata.combining(c))


def normalize_ingredient_name(raw_name: str | None) -> str:
    """Return the canonical base name for a free-text ingredient.

    1. Lowercase and strip diacritics.
    2. Drop parenthesised notes and everything after the first comma.
    3. Drop descriptor words, unless that would leave nothing.
    4. Singularise the first word naively (trailing 's' on words > 3 chars).
    5. Keep at most four words.

    Never raises: an empty or unusable name maps to ``"ingrediente"``.
    """
    base = strip_accents((raw_name or "").lower())
    base = _PARENTHESISED.sub(" ", base).split(",")[0].strip()

    all_tokens = base.split()
    tokens = [t for t in all_tokens if t not in DESCRIPTOR_WORDS] or all_tokens

    if tokens and len(tokens[0]) > 3 and tokens[0].endswith("s"):
        tokens[0] = tokens[0][:-1]

    return " ".join(tokens[:_MAX_NAME_TOKENS]).strip() or base or FALLBACK_NAME


def normalize_unit(raw_unit: str | None) -> str:
    """Map a unit spelling to its canonical form; unknown units pass through."""
    value = strip_accents((raw_unit or "").lower()).strip()
    if not value:
        return DEFAULT_UNIT
    return UNIT_SYNONYMS.get(value, value)


def catalog_key(ingredient_base: str | None) -> str:
    """Lookup key for ingredient catalog entries."""
    return strip_accents((ingredient_base or "").strip().lower())


def is_spice_category(category: str | None) -> bool:
    """True for categories the shopping list leaves out (pantry spices)."""
    normalised = strip_accents((category or "").lower())
    return "especia" in normalised or "spice" in normalised
