"""Jukebox background services."""
