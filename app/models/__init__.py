from app.models.user import User
from app.models.vendor import Vendor
from app.models.order import Order, OrderItem, OrderTracking
from app.models.appointment import Appointment
from app.models.delivery import DeliveryProvider, Delivery, DeliveryUpdate
from app.models.payout import PayoutRequest
from app.models.earnings import VendorEarning
from app.models.platform_setting import PlatformSetting
from app.models.notification import Notification
from app.models.webhook_event import WebhookEvent
from app.models.platform_event import PlatformEvent
from app.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "Vendor",
    "Order",
    "OrderItem",
    "OrderTracking",
    "Appointment",
    "DeliveryProvider",
    "Delivery",
    "DeliveryUpdate",
    "PayoutRequest",
    "VendorEarning",
    "PlatformSetting",
    "Notification",
    "WebhookEvent",
    "PlatformEvent",
    "ReconciliationReport",
]
