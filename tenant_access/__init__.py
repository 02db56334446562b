"""
Tenant lifecycle and access-control engine.

Derives a tenant's operational status from raw subscription fields and
decides whether an actor may perform an action on a feature.
"""

__version__ = "0.1.0"
