"""SQLAlchemy models."""

from src.models.delivery import Delivery
from src.models.reminder import Reminder

__all__ = [
    "Reminder",
    "Delivery",
]
