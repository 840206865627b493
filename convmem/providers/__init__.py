"""LLM provider abstraction module."""
