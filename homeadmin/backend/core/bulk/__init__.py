"""Bulk operation engine: registry, validation, batched execution, tracking and audit."""
