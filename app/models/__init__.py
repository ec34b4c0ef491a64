from app.models.ai_interaction import AiInteraction
from app.models.ban import BannedAccessAttempt, BannedDevice, BannedIp, BannedUser
from app.models.credential_usage import CredentialUsage
from app.models.device_tracking import DeviceTracking
from app.models.global_setting import GlobalSetting
from app.models.usage_limit import UsageLimit
from app.models.user_limit import UserLimit

__all__ = [
    "AiInteraction",
    "BannedAccessAttempt",
    "BannedDevice",
    "BannedIp",
    "BannedUser",
    "CredentialUsage",
    "DeviceTracking",
    "GlobalSetting",
    "UsageLimit",
    "UserLimit",
]
