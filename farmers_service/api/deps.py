"""
API dependency helpers.

Resolves the caller identity from the auth proxy headers and provides the
bulk farmer service bound to the request's database session.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from farmers_service.db.database import get_db
from farmers_service.services.bulk_farmer_service import (
    BulkFarmerService,
    Requester,
    build_bulk_farmer_service,
)


# Contract:
# Returns the Requester for the call.
# Raises 401 if identity cannot be resolved.
def get_requester(
    x_auth_request_user: Optional[str] = Header(default=None),
    x_forwarded_user: Optional[str] = Header(default=None),
    x_org_id: Optional[str] = Header(default=None),
) -> Requester:
    user = (x_auth_request_user or x_forwarded_user or "").strip()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return Requester(user_id=user, org_id=(x_org_id or "").strip())


def get_bulk_farmer_service(db: Session = Depends(get_db)) -> BulkFarmerService:
    return build_bulk_farmer_service(db)
