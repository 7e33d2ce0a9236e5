"""Sync module - planning, change tracking, projection and writing."""
