from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assetdesk.models.asset import Asset
from assetdesk.models.tenant import BrandMembership, BrandRole, TenantMembership, TenantRole
from assetdesk.models.user import User

TENANT_ADMIN_ROLES = frozenset({TenantRole.owner, TenantRole.admin})


async def get_tenant_role(session: AsyncSession, *, user_id: UUID, tenant_id: UUID) -> TenantRole | None:
    result = await session.execute(
        select(TenantMembership.role).where(TenantMembership.user_id == user_id, TenantMembership.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def get_brand_role(session: AsyncSession, *, user_id: UUID, brand_id: UUID) -> BrandRole | None:
    result = await session.execute(
        select(BrandMembership.role).where(BrandMembership.user_id == user_id, BrandMembership.brand_id == brand_id)
    )
    return result.scalar_one_or_none()


async def can_view_asset(session: AsyncSession, user: User, asset: Asset) -> bool:
    """Tenant owners and admins see every asset; members need a role on the asset's brand."""
    tenant_role = await get_tenant_role(session, user_id=user.id, tenant_id=asset.tenant_id)
    if tenant_role is None:
        return False
    if tenant_role in TENANT_ADMIN_ROLES:
        return True
    return await get_brand_role(session, user_id=user.id, brand_id=asset.brand_id) is not None


async def can_extract_all_pages(session: AsyncSession, user: User, asset: Asset) -> bool:
    tenant_role = await get_tenant_role(session, user_id=user.id, tenant_id=asset.tenant_id)
    return tenant_role in TENANT_ADMIN_ROLES
