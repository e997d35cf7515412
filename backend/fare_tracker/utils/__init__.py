"""Utility modules for Fare Tracker."""

from fare_tracker.utils.clock import utcnow, new_id

__all__ = ["utcnow", "new_id"]
