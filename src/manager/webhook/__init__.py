"""GitHub webhook ingress for the session manager.

Handles one event, issues.labeled: a trigger label applied by an
allow-listed sender starts a planner session for the issue. Signature
validation happens before requests reach this service.
"""

from src.manager.webhook.handler import WebhookHandler, build_trigger_labels
from src.manager.webhook.ingress import (
    IngressAdapter,
    MalformedEventError,
    UnauthorizedSenderError,
)
from src.manager.webhook.models import (
    IngressResult,
    IngressState,
    IssueLabeledEvent,
    TriggerLabel,
    WebhookHeaders,
)

__all__ = [
    "IngressAdapter",
    "IngressResult",
    "IngressState",
    "IssueLabeledEvent",
    "MalformedEventError",
    "TriggerLabel",
    "UnauthorizedSenderError",
    "WebhookHandler",
    "WebhookHeaders",
    "build_trigger_labels",
]
