from .user import User
from .device import Device, DEVICE_TYPES
from .lan_network import LanNetwork

__all__ = [
    "User",
    "Device",
    "DEVICE_TYPES",
    "LanNetwork",
]
