from assetdesk.db.base import Base  # noqa: F401
from assetdesk.models.user import User  # noqa: F401
from assetdesk.models.tenant import Brand, BrandMembership, BrandRole, Tenant, TenantMembership, TenantRole  # noqa: F401
from assetdesk.models.asset import Asset  # noqa: F401
from assetdesk.models.render import RenderBatch, RenderBatchStatus, RenderJob, RenderJobStatus  # noqa: F401

__all__ = [
    "Base",
    "User",
    "Tenant",
    "Brand",
    "TenantMembership",
    "TenantRole",
    "BrandMembership",
    "BrandRole",
    "Asset",
    "RenderJob",
    "RenderJobStatus",
    "RenderBatch",
    "RenderBatchStatus",
]
