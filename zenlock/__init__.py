"""
ZenLock usage core.

Local persistence and reactive quota state for screen-time enforcement.
"""

__version__ = "0.1.0"
