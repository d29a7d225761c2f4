from twitch_exporter.routes.system_routes import register_system_routes
from twitch_exporter.routes.webhook_routes import register_webhook_routes

__all__ = [
    "register_system_routes",
    "register_webhook_routes",
]
