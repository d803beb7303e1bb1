"""
Notification channel routes.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from alertrelay.database import get_db
from alertrelay.dependencies.auth import get_current_user, TokenPayload
from alertrelay.schemas.channels import ChannelCreate, ChannelResponse
from alertrelay.services.channels import ChannelService


router = APIRouter(prefix="/api/channels", tags=["channels"])


@router.get("", response_model=list[ChannelResponse])
async def list_channels(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ChannelService(db).list_channels(token.org_id)


@router.post("", response_model=ChannelResponse, status_code=status.HTTP_201_CREATED)
async def create_channel(
    request: ChannelCreate,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ChannelService(db).create(token.org_id, request)


@router.delete("/{channel_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_channel(
    channel_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a channel. Rules still pointing at it record a failed action when they fire."""
    await ChannelService(db).delete(token.org_id, channel_id)
