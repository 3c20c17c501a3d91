"""Storyvoice: voice-driven branching narrative engine."""

__version__ = "0.1.0"
