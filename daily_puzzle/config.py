"""
Configuration settings for the daily puzzle server
"""
import os

# Database settings
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/daily_puzzle.db")
DB_CONNECT_TIMEOUT = float(os.getenv("DB_CONNECT_TIMEOUT", "10"))
DB_HEALTH_RETRIES = int(os.getenv("DB_HEALTH_RETRIES", "3"))

# Ollama settings
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.2:3b")
OLLAMA_EMBED_MODEL = os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text")
AI_TIMEOUT = float(os.getenv("AI_TIMEOUT", "30"))

# Puzzle generation
DEFAULT_PUZZLE_TYPE = os.getenv("DEFAULT_PUZZLE_TYPE", "rebus")
QUALITY_THRESHOLD = int(os.getenv("QUALITY_THRESHOLD", "70"))
GENERATION_MAX_ATTEMPTS = int(os.getenv("GENERATION_MAX_ATTEMPTS", "3"))
DECISION_LOG_QUEUE_SIZE = int(os.getenv("DECISION_LOG_QUEUE_SIZE", "256"))
FALLBACK_RETRY_SECONDS = float(os.getenv("FALLBACK_RETRY_SECONDS", "300"))

# Cron / admin shared secret
CRON_SECRET = os.getenv("CRON_SECRET")

# Web push (VAPID)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY")
VAPID_EMAIL = os.getenv("VAPID_EMAIL", "mailto:admin@example.com")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Server settings
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))
