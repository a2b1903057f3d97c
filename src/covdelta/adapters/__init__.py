"""Adapters that read coverage tool output."""
