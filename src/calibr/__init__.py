"""Calibr - forecast journaling, Kelly position sizing and forecaster reputation."""

__version__ = "0.1.0"
