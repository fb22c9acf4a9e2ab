from bloom.models.base import Base
from bloom.models.practitioner import Practitioner
from bloom.models.client import Client
from bloom.models.therapy_session import SessionStatus, TherapySession
from bloom.models.availability_slot import AvailabilitySlot
from bloom.models.sync_log import SyncLog, SyncLogStatus, SyncType

__all__ = [
    "Base",
    "Practitioner",
    "Client",
    "TherapySession",
    "SessionStatus",
    "AvailabilitySlot",
    "SyncLog",
    "SyncLogStatus",
    "SyncType",
]
