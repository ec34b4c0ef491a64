from pydantic import BaseModel


class BanDetails(BaseModel):
    reason: str
    bannedAt: str | None
    bannedBy: str | None
    notes: str | None


class BanStatusResponse(BaseModel):
    isBanned: bool
    banDetails: BanDetails | None
    bannedDevices: list[str]
    bannedIPs: list[str]
    totalDevices: int
    totalIPs: int
