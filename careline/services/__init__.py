"""Careline services."""
