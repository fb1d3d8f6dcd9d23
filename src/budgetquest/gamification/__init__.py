"""Streaks, XP levels and achievements."""
