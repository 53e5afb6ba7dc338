"""Idea ballot services."""
