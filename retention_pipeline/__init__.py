"""
Education Retention Analytics Pipeline
=======================================

Loads institution-level enrollment and retention extracts into a DuckDB
star schema, collapses the demographic breakdown into an institution-year
summary, and validates the KPIs consumed by the reporting layer.
"""

__version__ = "1.0.0"
