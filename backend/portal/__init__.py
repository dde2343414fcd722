"""Vee Nutrition client portal backend."""
