import os
import secrets

# Flask secret key, used for session signing and CSRF token generation.
# Set SECRET_KEY in the environment for production; a random key is
# generated on startup as a fallback (sessions won't survive restarts).
SECRET_KEY = os.environ.get("SECRET_KEY", secrets.token_hex(32))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# JSON document holding every record collection (recipes, profiles, plan
# cycles, plan slots, ingredient catalog, shopping weeks, manual items).
STORE_FILE = os.environ.get("MEALCYCLE_STORE_FILE", "data/store.json")

# Authentication is handled outside this app; every record is read and
# written on behalf of this single owner.
OWNER_ID = os.environ.get("MEALCYCLE_OWNER_ID", "default")

# Servings cooked for a slot that carries no servings_override.
DEFAULT_SERVINGS = 3

# Planning horizon
WEEKS_COUNT = 4
PLAN_STRATEGY = "variety_first"

# Variety and safety rules applied by the slot generator
COOLDOWN_DAYS = 10          # minimum gap before a pool recipe may repeat
MAX_RISOTTO_PER_WEEK = 1
MAX_RICE_PER_WEEK = 2

# Google Sheets export (optional)
GOOGLE_SHEETS_ID = os.environ.get("GOOGLE_SHEETS_ID", "your-spreadsheet-id")
CREDENTIALS_FILE = os.environ.get("GOOGLE_CREDENTIALS_FILE", "credentials.json")
