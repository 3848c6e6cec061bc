from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ...core.dependencies import get_persistence_gateway
from ...domain.ports.persistence import CustomerDirectory


def require_user_id(
    x_user_id: Optional[str] = Header(default=None),
    directory: CustomerDirectory = Depends(get_persistence_gateway),
) -> str:
    """Caller identity forwarded by the authenticating gateway."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity.")
    if not directory.user_exists(x_user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return x_user_id
