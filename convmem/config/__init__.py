"""Configuration module for convmem."""
