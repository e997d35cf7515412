"""Fare Tracker: tracked flight routes, price history and drop alerts."""

__version__ = "0.1.0"
