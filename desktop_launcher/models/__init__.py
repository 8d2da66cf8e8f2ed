"""Data models shared across the launcher."""
