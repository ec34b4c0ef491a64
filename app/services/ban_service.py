"""Read-only ban lookups for a user and every device/address seen with them."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.ban import BannedDevice, BannedIp, BannedUser
from app.models.device_tracking import DeviceTracking


async def get_ban_status(db: AsyncSession, user_id: str) -> dict:
    user_ban = await db.get(BannedUser, user_id)

    rows = (
        await db.execute(select(DeviceTracking.device_id, DeviceTracking.ip_address).where(DeviceTracking.user_id == user_id))
    ).all()
    devices = sorted({r.device_id for r in rows if r.device_id})
    ips = sorted({r.ip_address for r in rows if r.ip_address})

    banned_devices: list[str] = []
    if devices:
        banned_devices = list(
            (await db.execute(select(BannedDevice.device_id).where(BannedDevice.device_id.in_(devices)))).scalars()
        )
    banned_ips: list[str] = []
    if ips:
        banned_ips = list((await db.execute(select(BannedIp.ip_address).where(BannedIp.ip_address.in_(ips)))).scalars())

    return {
        "isBanned": user_ban is not None or bool(banned_devices) or bool(banned_ips),
        "banDetails": (
            {
                "reason": user_ban.reason,
                "bannedAt": user_ban.banned_at.isoformat() if user_ban.banned_at else None,
                "bannedBy": user_ban.banned_by,
                "notes": user_ban.notes,
            }
            if user_ban
            else None
        ),
        "bannedDevices": sorted(banned_devices),
        "bannedIPs": sorted(banned_ips),
        "totalDevices": len(devices),
        "totalIPs": len(ips),
    }
