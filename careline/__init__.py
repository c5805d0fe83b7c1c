"""Careline: crisis detection and emergency alert escalation engine."""

__version__ = "0.4.0"
