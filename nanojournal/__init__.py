"""nanojournal - long-term pattern memory for a personal journaling assistant."""

__version__ = "0.1.0"
__logo__ = "📓"
