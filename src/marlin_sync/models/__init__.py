"""Data models for Marlin Sync."""
