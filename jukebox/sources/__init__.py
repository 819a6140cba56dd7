"""
Sources — streaming services the jukebox can play from.

A source keeps its own login and device session alive and reports its
connection state to the UI through the input service.

Current sources:
  spotify/  — Spotify Web Playback credential + device session service
"""
