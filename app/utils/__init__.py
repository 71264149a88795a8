"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import day_bounds, ensure_utc, utc_now

__all__ = ["day_bounds", "ensure_utc", "utc_now"]
