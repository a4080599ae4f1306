"""
Accruals Hub - Routes Package

Modular API routers for the Accruals Hub.
"""

from .tenants import router as tenants_router, set_dependencies as set_tenants_deps
from .lifecycle import router as lifecycle_router, set_dependencies as set_lifecycle_deps

__all__ = [
    'tenants_router', 'set_tenants_deps',
    'lifecycle_router', 'set_lifecycle_deps',
]
