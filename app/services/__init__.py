"""Hotspot billing services."""
