"""
Per-domain repository modules for database access.

`farmers_service.db.crud` is a thin facade over these modules.
"""
