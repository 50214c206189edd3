"""
Sermon Clips - turns uploaded sermon videos into short-form platform clips.
"""

__version__ = "1.0.0"
