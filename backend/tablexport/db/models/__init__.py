"""Re-export all models so Base.metadata sees them."""

from tablexport.db.models.daily_usage import DailyUsage
from tablexport.db.models.payment import Payment
from tablexport.db.models.subscription import Subscription
from tablexport.db.models.user_profile import UserProfile
from tablexport.db.models.webhook_event import PayPalWebhookEvent, WebhookError

__all__ = [
    "DailyUsage",
    "PayPalWebhookEvent",
    "Payment",
    "Subscription",
    "UserProfile",
    "WebhookError",
]
