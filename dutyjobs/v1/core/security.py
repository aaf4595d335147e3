from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from dutyjobs.config.settings import AuthMode, settings


@dataclass
class Principal:
    """Represents the current authenticated user and the workspace they act in."""

    user_id: str
    workspace_id: str
    roles: list[str]
    email: str | None = None


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_workspace_id: str | None = Header(None, alias="X-Workspace-ID"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns dev defaults with admin role
    - dev: Extract user and workspace from headers
    - oidc: Token verification is provided by the host application
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(
            user_id=settings.dev_user_id,
            workspace_id=settings.dev_workspace_id,
            roles=["admin"],
        )
    elif settings.auth_mode == AuthMode.DEV:
        # Require headers in dev mode
        if not x_user_id or not x_workspace_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID and X-Workspace-ID headers are required in dev auth mode",
            )

        return Principal(
            user_id=x_user_id,
            workspace_id=x_workspace_id,
            roles=["admin"],  # Default role in dev mode
        )
    elif settings.auth_mode == AuthMode.OIDC:
        raise NotImplementedError(
            "OIDC auth mode requires overriding get_principal in the host application"
        )
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
