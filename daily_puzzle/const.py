"""Constants for the daily puzzle server."""

# Puzzle types
PUZZLE_TYPE_REBUS = "rebus"
PUZZLE_TYPE_LOGIC_GRID = "logic-grid"
PUZZLE_TYPE_CAESAR_CIPHER = "caesar-cipher"
PUZZLE_TYPE_RIDDLE = "riddle"
PUZZLE_TYPE_NUMBER_SEQUENCE = "number-sequence"

PUZZLE_TYPES = (
    PUZZLE_TYPE_REBUS,
    PUZZLE_TYPE_LOGIC_GRID,
    PUZZLE_TYPE_CAESAR_CIPHER,
    PUZZLE_TYPE_RIDDLE,
    PUZZLE_TYPE_NUMBER_SEQUENCE,
)

# Difficulty by weekday, Sunday first (Sun=5 ... Wed=7 hardest ... Sat=4)
DAILY_DIFFICULTIES = [5, 4, 5, 7, 6, 5, 4]

# Gameplay
DEFAULT_MAX_ATTEMPTS = 5

# Scoring
BASE_SCORE = 100
MIN_SCORE = 10
SPEED_MAX_BONUS = 50
SPEED_FAST_THRESHOLD = 30  # seconds, full bonus
SPEED_SLOW_THRESHOLD = 120  # seconds, no bonus
PENALTY_PER_WRONG_ATTEMPT = 15
PENALTY_PER_HINT = 10
MAX_HINT_PENALTY = 30
STREAK_BONUS_PER_DAY = 5
MAX_STREAK_BONUS = 50
DIFFICULTY_BASELINE = 4
DIFFICULTY_BONUS_PER_LEVEL = 10
MAX_DIFFICULTY_BONUS = 60
POINTS_PER_LEVEL = 1000
MAX_LEVEL = 100

# Engagement
LUCKY_SOLVE_CHANCE = 0.1
LUCKY_SOLVE_MULTIPLIER = 2
DAILY_BONUS_CHANCE = 0.15
DAILY_BONUS_MIN_MULTIPLIER = 1.5
DAILY_BONUS_MAX_MULTIPLIER = 3.0
INITIAL_STREAK_FREEZES = 1
SPEED_SOLVE_SECONDS = 30

# Auth
SESSION_COOKIE = "session_token"
GUEST_TOKEN_COOKIE = "guest_token"
COOKIE_MAX_AGE = 60 * 60 * 24 * 365  # 1 year

# Notifications
NOTIFICATION_BATCH_SIZE = 100
NOTIFICATION_TTL = 24 * 60 * 60
SUBSCRIPTION_ACTIVE_DAYS = 30

DAILY_NOTIFICATION = {
    "title": "New Puzzle Available!",
    "body": "A fresh puzzle is waiting for you. Can you solve today's challenge?",
    "icon": "/icon-192x192.png",
    "badge": "/icon-192x192.png",
    "tag": "daily-puzzle",
}

GENERIC_PUZZLE_TEXT = "Solve this puzzle using logical deduction."
NO_PUZZLE_MESSAGE = "No puzzle available right now. Check back later!"

# Pre-authored puzzles served when generation fails.
# Rotation is by day of year, so order matters.
FALLBACK_PUZZLES = [
    {
        "puzzle": "☀️ 🌻",
        "answer": "sunflower",
        "difficulty": 3,
        "explanation": "Sun (☀️) + Flower (🌻) = Sunflower",
        "category": "compound_words",
        "hints": ["Think about nature", "Combine two elements", "A yellow flower"],
    },
    {
        "puzzle": "🐝 4️⃣",
        "answer": "before",
        "difficulty": 4,
        "explanation": "Bee (🐝) sounds like 'be' + Four (4️⃣) = Before",
        "category": "phonetic",
        "hints": ["Think about sounds", "Phonetic wordplay", "Relates to time"],
    },
    {
        "puzzle": "🌙 💡",
        "answer": "moonlight",
        "difficulty": 5,
        "explanation": "Moon (🌙) + Light (💡) = Moonlight",
        "category": "compound_words",
        "hints": ["Think about nighttime", "Two elements combine", "Natural illumination"],
    },
]
