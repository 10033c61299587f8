"""
Device inventory endpoints.

Devices are created and refreshed by the session monitor; this router only
lists them and lets an admin rename or retype one.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models import Device
from schemas import DeviceResponse, DeviceUpdate, PaginatedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.get("", response_model=PaginatedResponse)
async def list_devices(
    user_id: Optional[int] = Query(None),
    active_only: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    """List devices, most recently connected first."""
    query = select(Device)
    count_query = select(func.count(Device.id))
    if user_id is not None:
        query = query.where(Device.user_id == user_id)
        count_query = count_query.where(Device.user_id == user_id)
    if active_only:
        query = query.where(Device.is_active.is_(True))
        count_query = count_query.where(Device.is_active.is_(True))

    query = query.order_by(Device.last_connected.desc(), Device.id).offset(skip).limit(limit)
    devices = (await db.execute(query)).scalars().all()
    total = (await db.execute(count_query)).scalar() or 0

    return PaginatedResponse(
        total=total,
        skip=skip,
        limit=limit,
        items=[DeviceResponse.model_validate(d).model_dump(mode="json") for d in devices],
    )


@router.get("/{device_id}", response_model=DeviceResponse)
async def get_device(device_id: int, db: AsyncSession = Depends(get_db)):
    device = await db.get(Device, device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.put("/{device_id}", response_model=Dict)
async def update_device(
    device_id: int,
    data: DeviceUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Rename or retype a device."""
    device = await db.get(Device, device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")

    update_data = data.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        raise HTTPException(status_code=400, detail="No fields to update")
    for field, value in update_data.items():
        setattr(device, field, value)

    await db.commit()
    await db.refresh(device)
    logger.info(f"Updated device {device_id}: {', '.join(update_data)}")

    return {
        "success": True,
        "data": DeviceResponse.model_validate(device).model_dump(mode="json"),
        "message": f"Device {device_id} updated",
    }
