"""Execution engine for bulk operations: worker pool, progress tracking, background tasks."""
