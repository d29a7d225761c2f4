from twitch_exporter.eventsub.client import EventSubClient
from twitch_exporter.eventsub.reconciler import (
    SubscriptionReconciler,
    SubscriptionRecord,
    SubscriptionRegistryClient,
)
from twitch_exporter.eventsub.signature import SignatureVerifier, compute_signature

__all__ = [
    "EventSubClient",
    "SignatureVerifier",
    "SubscriptionReconciler",
    "SubscriptionRecord",
    "SubscriptionRegistryClient",
    "compute_signature",
]
