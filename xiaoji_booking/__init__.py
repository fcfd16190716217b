from .database import DatabaseManager, get_db_manager
from .errors import BindCodeError, BookingError, DeliveryError, NotFoundError, PermissionDenied, ValidationError
from .flow import BookingFlow, FlowSettings
from .models import CallbackContext, CourseType, OrderStatus, TelegramUser
from .notification import TelegramNotifier, get_notifier
from .scheduler import TemplateScheduler

__all__ = [
    "BindCodeError",
    "BookingError",
    "BookingFlow",
    "CallbackContext",
    "CourseType",
    "DatabaseManager",
    "DeliveryError",
    "FlowSettings",
    "NotFoundError",
    "OrderStatus",
    "PermissionDenied",
    "TelegramNotifier",
    "TelegramUser",
    "TemplateScheduler",
    "ValidationError",
    "get_db_manager",
    "get_notifier",
]
