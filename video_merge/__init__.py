"""
Video Merge package.

Joins an intro clip and a main clip into one MP4, reconciling differing
audio-track presence and normalizing video parameters.
"""

__version__ = "1.0.0"
