import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# --- Paths ---
DATA_DIR = Path(os.getenv("LIFE_TRACKER_DATA_DIR", "data"))
DB_PATH = os.getenv("LIFE_TRACKER_DB_PATH", str(DATA_DIR / "life_tracker.db"))
BACKUP_FILE = os.getenv("LIFE_TRACKER_BACKUP_FILE", str(DATA_DIR / "import_backups.json"))
EXPORT_DIR = Path(os.getenv("LIFE_TRACKER_EXPORT_DIR", str(DATA_DIR / "exports")))

# Single-user install; every row is stamped with this id
USER_ID = os.getenv("LIFE_TRACKER_USER_ID", "local-user")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# --- LLM ---
DEFAULT_LLM_BACKEND = os.getenv("LLM_BACKEND", "openai")
CURRENT_LLM_BACKEND = DEFAULT_LLM_BACKEND
CLI_SELECTED_MODEL = None

DEFAULT_LLM_MODEL = {
    "openai": os.getenv("OPENAI_MODEL", "gpt-4.1-mini"),
    "ollama": os.getenv("OLLAMA_MODEL", "llama3.1:8b"),
}
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_TIMEOUT_SECONDS = int(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

# Prices per 1K tokens
MODEL_PRICING = {
    "gpt-4.1-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "gpt-4": {"input": 0.03, "output": 0.06},
}

# --- Importer ---
DATE_MATCH_THRESHOLD = 0.3
DUPLICATE_SIMILARITY_THRESHOLD = 0.9
MIN_CONTENT_LENGTH = 5
MIN_FREEFORM_CONTENT_LENGTH = 10
MAX_LOCAL_BACKUPS = 10
EARLIEST_IMPORT_YEAR = 2020

MONTHS = {
    'jan': 1, 'january': 1, 'feb': 2, 'february': 2, 'mar': 3, 'march': 3,
    'apr': 4, 'april': 4, 'may': 5, 'jun': 6, 'june': 6,
    'jul': 7, 'july': 7, 'aug': 8, 'august': 8, 'sep': 9, 'september': 9,
    'oct': 10, 'october': 10, 'nov': 11, 'november': 11, 'dec': 12, 'december': 12
}

MOOD_KEYWORDS = {
    'great': ['amazing', 'fantastic', 'wonderful', 'excellent', 'outstanding', 'incredible', 'perfect'],
    'good': ['good', 'happy', 'positive', 'pleased', 'satisfied', 'content', 'cheerful', 'upbeat'],
    'neutral': ['okay', 'fine', 'normal', 'average', 'alright', 'decent'],
    'bad': ['bad', 'sad', 'down', 'upset', 'disappointed', 'frustrated', 'annoyed', 'stressed'],
    'terrible': ['awful', 'horrible', 'terrible', 'devastating', 'miserable', 'depressed', 'anxious'],
}

COMMON_TAGS = [
    'work', 'family', 'friends', 'health', 'exercise', 'climbing', 'travel',
    'goals', 'productivity', 'stress', 'anxiety', 'happiness', 'growth',
    'learning', 'relationships', 'hobbies', 'meditation', 'sleep', 'food'
]

# --- Trackers ---
TRACKED_GRADES = ['V6', 'V7', 'V8', 'V9', 'V10']

EXPENSE_CATEGORY_KEYWORDS = {
    'eating out': ['restaurant', 'dinner', 'lunch', 'breakfast', 'coffee', 'cafe', 'starbucks', 'mcdonald',
                   'burger', 'pizza', 'sushi', 'dine', 'dining', 'eat out', 'takeout', 'delivery'],
    'groceries': ['grocery', 'groceries', 'supermarket', 'walmart', 'target', 'safeway', 'kroger',
                  'whole foods', 'trader joe', 'costco', 'food shopping', 'milk', 'bread', 'vegetables'],
    'transportation': ['uber', 'lyft', 'gas', 'gasoline', 'parking', 'transit', 'subway', 'bus', 'train',
                       'taxi', 'car payment', 'auto', 'vehicle', 'transport', 'fuel'],
    'entertainment': ['movie', 'cinema', 'concert', 'netflix', 'spotify', 'gaming', 'games', 'entertainment',
                      'fun', 'activity', 'show', 'theater', 'streaming'],
    'shopping': ['amazon', 'shopping', 'clothes', 'clothing', 'shoes', 'electronics', 'purchase', 'buy',
                 'store', 'mall', 'retail', 'online shopping'],
    'subscriptions': ['subscription', 'netflix', 'spotify', 'hulu', 'disney', 'apple music',
                      'youtube premium', 'amazon prime', 'monthly', 'annual', 'recurring'],
    'bills': ['rent', 'utilities', 'electricity', 'water', 'internet', 'phone', 'insurance', 'mortgage',
              'bill', 'payment', 'electric', 'gas bill', 'cable'],
}
DEFAULT_EXPENSE_CATEGORY = 'eating out'

# --- Summaries ---
SUMMARY_STALE_HOURS = 24
BULK_ANALYSIS_FRESH_DAYS = 7
BULK_MONTH_MIN_ENTRIES = 5
BULK_HABIT_MIN_ROWS = 30
BULK_EXPENSE_MIN_ROWS = 50

CACHE_TTL_SECONDS = {
    'journal-reflect': 86400,
    'meal-analyze': 86400,
    'ai-chat': 0,
    'generate-summary': 3600,
    'bulk-analyze': 604800,
}
DEFAULT_CACHE_TTL = 3600

# Per user and endpoint
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_REQUESTS = 10
