"""API dependencies."""

import logging
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from sendgate.config import Environment, settings

logger = logging.getLogger("sendgate.api")


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get a database session from the application's storage handle."""
    async with request.app.state.db.session() as session:
        yield session


async def get_tenant_id(
    x_tenant_id: str | None = Header(None, alias="X-Tenant-ID"),
) -> str:
    """
    Extract tenant ID from request.

    Tenancy is resolved upstream; this service trusts the header.
    """
    if x_tenant_id:
        tenant_id = x_tenant_id.strip()
        if not tenant_id or len(tenant_id) > 255:
            raise HTTPException(status_code=400, detail="Invalid tenant ID format")
        return tenant_id

    # Default tenant for development
    if settings.env == Environment.DEVELOPMENT:
        return settings.default_dev_tenant_id

    raise HTTPException(status_code=401, detail="Missing tenant ID")
