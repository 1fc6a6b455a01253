"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import SettingModel, CustomerLinkModel

__all__ = [
    "Base",
    "metadata",
    "SettingModel",
    "CustomerLinkModel",
]
