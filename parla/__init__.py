"""Parla: an AI conversation partner for language learners."""

__version__ = "1.0.0"
