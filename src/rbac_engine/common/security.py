"""Route-guard dependencies for FastAPI host applications."""

from typing import Awaitable, Callable

from fastapi import HTTPException, Request

from rbac_engine.ability.engine import Principal
from rbac_engine.ability.guards import Guard


async def resolve_principal(request: Request) -> Principal:
    """FastAPI dependency that resolves the calling user from the user-id header."""
    from rbac_engine.deps import get_ability_engine

    engine = get_ability_engine()
    settings = engine.store.settings
    user_id = request.headers.get(settings.user_header)
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {settings.user_header} header")
    principal = engine.principal(user_id)
    if principal is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return principal


def require_permissions(guard: Guard) -> Callable[[Request], Awaitable[Principal]]:
    """Wrap a guard as a FastAPI dependency returning the authorized Principal.

    Usage::

        @app.delete("/roles/{role_id}")
        async def delete_role(
            role_id: str,
            principal: Principal = Depends(require_permissions(require_all("roles.delete"))),
        ): ...
    """

    async def dependency(request: Request) -> Principal:
        from rbac_engine.deps import get_ability_engine

        principal = await resolve_principal(request)
        ability = get_ability_engine().for_principal(principal)
        if not guard.allows(ability):
            missing = guard.missing(ability)
            raise HTTPException(
                status_code=403,
                detail=f"Missing permission(s): {', '.join(missing)}",
            )
        return principal

    return dependency
