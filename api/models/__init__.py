from models.user import User
from models.request import DeliveryRequest
from models.incident import Incident
from models.message import ChatMessage
from models.audit import AuditLog

__all__ = [
    "User", "DeliveryRequest", "Incident", "ChatMessage", "AuditLog",
]
