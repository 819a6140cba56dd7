"""Shared plumbing for jukebox services (config, HTTP service base, periodic tasks)."""
