"""review_context: change-aware context windowing for code review."""

__version__ = "0.3.0"
