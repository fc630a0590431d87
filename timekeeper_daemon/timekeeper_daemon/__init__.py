"""
Timekeeper daemon: per-device daily screen-time timers for a household.
"""
