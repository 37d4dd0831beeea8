"""
Domain enums shared by the state machine, services, workers and ORM models.
"""

from enum import Enum


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    CONFIRMED = "CONFIRMED"
    PACKED = "PACKED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURN_REQUESTED = "RETURN_REQUESTED"
    REPLACED = "REPLACED"


class PaymentMode(str, Enum):
    COD = "COD"
    ONLINE = "ONLINE"


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    SYSTEM = "SYSTEM"  # checkout, payment reconciliation and sweeps


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class CoinSource(str, Enum):
    REFERRAL = "REFERRAL"
    ORDER_REWARD = "ORDER_REWARD"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ORDER_PAYMENT = "ORDER_PAYMENT"
    BANNER_PURCHASE = "BANNER_PURCHASE"


class JobStatus(str, Enum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class QueueName(str, Enum):
    ANALYTICS = "analytics"
    NOTIFICATIONS = "notifications"
    ORDERS = "orders"
    CLEANUP = "cleanup"


class JobType(str, Enum):
    STOCK_DEDUCTION = "stock_deduction"
    COIN_DEBIT = "coin_debit"
    NOTIFICATION = "notification"
    ANALYTICS_EVENT = "analytics_event"
    CLEANUP = "cleanup"


class BackoffType(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class CleanupKind(str, Enum):
    ABANDONED_ORDERS = "abandoned_orders"
    EXPIRED_COUPONS = "expired_coupons"
    EXPIRED_BANNERS = "expired_banners"
    PURGE_COMPLETED_JOBS = "purge_completed_jobs"
    RECONCILE_ORDERS = "reconcile_orders"


class NotificationChannel(str, Enum):
    PUSH = "push"
    EMAIL = "email"
