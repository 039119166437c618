"""SQLite-backed job queue driving resumable, tool-calling agent threads."""

__version__ = "0.1.0"
