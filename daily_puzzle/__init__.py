"""Daily puzzle server: one AI-generated puzzle per day, locked per player."""

__version__ = "1.0.0"
