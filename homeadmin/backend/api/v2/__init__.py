"""API v2 routers."""
from homeadmin.backend.api.v2 import bulk_operations

__all__ = ["bulk_operations"]
