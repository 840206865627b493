"""Prompt text."""
