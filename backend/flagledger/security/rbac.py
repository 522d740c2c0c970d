from fastapi import Depends, HTTPException, Request, status

from flagledger.services.identity import Caller, resolve_caller
from flagledger.services.runtime import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_claims(request: Request) -> dict:
    token_payload = getattr(request.state, 'token_payload', None)
    if not token_payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Not authenticated')
    if token_payload.get('type', 'access') != 'access':
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Wrong token type')
    return token_payload


def get_caller(claims: dict = Depends(get_claims), services: Services = Depends(get_services)) -> Caller:
    try:
        return resolve_caller(services.session_factory, claims)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


def get_optional_caller(request: Request, services: Services = Depends(get_services)) -> Caller | None:
    if not getattr(request.state, 'token_payload', None):
        return None
    return get_caller(get_claims(request), services)


def require_role(*roles: str):
    def checker(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Missing role')
        return caller

    return checker
