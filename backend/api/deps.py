from typing import Annotated

from fastapi import Depends, HTTPException, Request

from backend.services.container import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(503, "Services not initialized")
    return services


def require_user(request: Request) -> str:
    return get_services(request).verifier.require(request)


ServicesDep = Annotated[Services, Depends(get_services)]
UserDep = Annotated[str, Depends(require_user)]
