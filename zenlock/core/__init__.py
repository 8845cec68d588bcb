"""
Core modules for ZenLock.

This package contains usage aggregation, quota derivation, state
publishing and the service facade used by enforcement hooks and UI code.
"""
