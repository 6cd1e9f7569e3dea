"""
Core RBAC dependencies and request context.

Authentication is not handled here: an upstream middleware is expected to set
``request.state.user_id``. These dependencies only answer "may this user do X".

Usage:
    @router.delete("/books/{book_id}", dependencies=[Depends(RequirePermission("books_delete"))])
    async def delete_book(book_id: str): ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable

from fastapi import Depends, HTTPException, Request, status

from .exceptions import PermissionDeniedError
from .facade import AuthorizationFacade
from .facade import get_authorization_facade as _get_facade


async def get_authorization_facade() -> AuthorizationFacade:
    """Process-wide facade, started on first use."""
    facade = _get_facade()
    await facade.start()
    return facade


async def get_current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return str(user_id)


@dataclass
class RBACContext:
    """Per-request authorization context."""

    user_id: str
    facade: AuthorizationFacade

    async def can(self, permission: str) -> bool:
        return await self.facade.authorize(self.user_id, permission)

    async def can_manage(self, target_user_id: str) -> bool:
        return await self.facade.can_manage(self.user_id, target_user_id)

    async def permission_map(self, service: str) -> Dict[str, bool]:
        return await self.facade.permission_map(self.user_id, service)

    async def has_role(self, role_slug: str) -> bool:
        return await self.facade.has_role(self.user_id, role_slug)


async def get_rbac_context(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    facade: AuthorizationFacade = Depends(get_authorization_facade),
) -> RBACContext:
    """Build RBAC context from authenticated request."""
    ctx = RBACContext(user_id=user_id, facade=facade)
    request.state.rbac = ctx
    return ctx


def require_permissions(permissions: Iterable[str]):
    """Require all specified permissions."""
    required = set(permissions)

    async def dependency(ctx: RBACContext = Depends(get_rbac_context)) -> RBACContext:
        missing = [slug for slug in sorted(required) if not await ctx.can(slug)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return ctx

    return dependency


def require_any_permission(permissions: Iterable[str]):
    """Require at least one permission."""
    required = set(permissions)

    async def dependency(ctx: RBACContext = Depends(get_rbac_context)) -> RBACContext:
        for slug in sorted(required):
            if await ctx.can(slug):
                return ctx
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires one of: {', '.join(sorted(required))}",
        )

    return dependency


def require_role(role_slug: str):
    """Require a directly-assigned role, e.g. ``require_role("librarian")``."""

    async def dependency(ctx: RBACContext = Depends(get_rbac_context)) -> RBACContext:
        if not await ctx.has_role(role_slug):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {role_slug}",
            )
        return ctx

    return dependency


class RequirePermission:
    """Class-based dependency for a single permission."""

    def __init__(self, permission: str):
        self.permission = permission

    async def __call__(self, ctx: RBACContext = Depends(get_rbac_context)) -> RBACContext:
        try:
            await ctx.facade.require_permission(ctx.user_id, self.permission)
        except PermissionDeniedError as e:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required permission: {e.permission}",
            ) from e
        return ctx
