from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request, status

from chatbridge.container import ServiceContainer
from chatbridge.schemas import UserLookupResponse, UserMapSnapshotResponse

router = APIRouter(prefix="/api/v1/users", tags=["users"])
logger = logging.getLogger(__name__)


def _get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


@router.get("", response_model=UserMapSnapshotResponse)
def users_snapshot(request: Request) -> UserMapSnapshotResponse:
    user_map = _get_container(request).discord_users
    return UserMapSnapshotResponse(
        filename=user_map.filename,
        id_to_name=user_map.id_to_name_map,
        name_to_id=user_map.name_to_id_map,
    )


@router.get("/lookup", response_model=UserLookupResponse)
def lookup_user(
    request: Request,
    user_id: str | None = Query(default=None, alias="id", min_length=1, max_length=64),
    name: str | None = Query(default=None, min_length=1, max_length=128),
) -> UserLookupResponse:
    user_map = _get_container(request).discord_users
    if user_id is not None and name is None:
        username = user_map.lookup_id(user_id)
        if username is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"user id not found: {user_id}",
            )
        return UserLookupResponse(user_id=user_id, username=username)
    if name is not None and user_id is None:
        resolved_id = user_map.lookup_name(name)
        if resolved_id is None:
            logger.info("user_lookup_miss name=%s", name)
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"username not found: {name}",
            )
        return UserLookupResponse(
            user_id=resolved_id,
            username=user_map.lookup_id(resolved_id) or name,
        )
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="exactly one of 'id' or 'name' is required",
    )
