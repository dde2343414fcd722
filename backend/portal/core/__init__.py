"""Configuration, constants, exceptions and shared helpers."""
