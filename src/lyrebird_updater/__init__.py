"""
LyreBirdAudio version manager.

This package moves a LyreBirdAudio installation between versions (tags,
branches, commits) while keeping local edits, the mediamtx-audio service and
its customisations intact, and recovering from interrupted updates.
"""

__version__ = "1.1.0"
