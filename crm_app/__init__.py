"""Meridian CRM application package."""
