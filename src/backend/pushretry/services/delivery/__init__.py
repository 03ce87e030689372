"""Delivery adapters used by the retry processor."""

from pushretry.services.delivery.push_delivery import PushGatewayDelivery, SqlSubscriptionResolver

__all__ = ["PushGatewayDelivery", "SqlSubscriptionResolver"]
