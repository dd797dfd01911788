"""Carrier adapters."""
