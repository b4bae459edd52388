from fastapi import Header, HTTPException, Request, status

from marketplace.infra.db import get_db_session  # noqa: F401
from marketplace.services import AppServices, resolve_services

PARTY_HEADER = "X-Party-Id"


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


async def require_party_id(
    request: Request,
    x_party_id: str | None = Header(None, alias=PARTY_HEADER),
) -> str:
    """The identity provider authenticates upstream and forwards the resolved party id."""
    party_id = _clean(x_party_id)
    if not party_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {PARTY_HEADER} header",
        )
    request.state.party_id = party_id
    return party_id


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not ready")
    return services
