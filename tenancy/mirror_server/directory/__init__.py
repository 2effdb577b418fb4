"""
Tenant directory for the mirror server.

This module provides:
- TenantDirectoryResolver: aggregation and canonical tenant lookups
- CrossTenantAccessIndex: cross-tenant links and O(1) access checks
- InvitationService: invitation acceptance
- RequestCoalescer: shared in-flight lookups
"""

from .access import (
    PERMISSION_HIERARCHY,
    AccessIndexEntry,
    CrossTenantAccessIndex,
    CrossTenantLink,
    Permission,
    index_id,
)
from .coalesce import RequestCoalescer
from .invitations import InvitationService
from .resolver import TenantDirectoryResolver

__all__ = [
    "PERMISSION_HIERARCHY",
    "AccessIndexEntry",
    "CrossTenantAccessIndex",
    "CrossTenantLink",
    "InvitationService",
    "Permission",
    "RequestCoalescer",
    "TenantDirectoryResolver",
    "index_id",
]
