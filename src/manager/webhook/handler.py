"""GitHub webhook payload parsing for the session manager.

Signature validation happens in front of this service, so incoming
requests are trusted once the delivery headers are present.

GitHub Webhook Payload Structure (issues.labeled):
{
  "action": "labeled",
  "label": {"name": "open-swe-auto"},
  "issue": {"number": 7, "title": "...", "body": "..."},
  "repository": {"name": "repo-name", "owner": {"login": "owner-name"}},
  "sender": {"login": "username", "id": 42},
  "installation": {"id": 1234}
}
"""

import logging
from typing import Any, Dict, Iterable, Optional

from src.manager.webhook.models import IssueLabeledEvent, TriggerLabel

logger = logging.getLogger(__name__)


ISSUES_EVENT = "issues"
LABELED_ACTION = "labeled"


def build_trigger_labels(
    standard: str,
    auto_accept: str,
    max_tier: str,
    max_auto_accept: str,
) -> Dict[str, TriggerLabel]:
    """Map each recognized label name to what it asks for."""
    labels = [
        TriggerLabel(name=standard),
        TriggerLabel(name=auto_accept, auto_accept=True),
        TriggerLabel(name=max_tier, max_tier=True),
        TriggerLabel(name=max_auto_accept, auto_accept=True, max_tier=True),
    ]
    return {label.name: label for label in labels}


class WebhookHandler:
    """Parses ``issues.labeled`` payloads into IssueLabeledEvent objects.

    Attributes:
        secret: The webhook secret (retained, signature validation happens
                before requests reach this service).
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret

    def parse_labeled_event(
        self,
        event_name: str,
        payload: Any,
    ) -> Optional[IssueLabeledEvent]:
        """Parse a labeled-issue event, returning None for anything else.

        Returns None for other event names or actions, and for payloads
        missing the issue, repository, label or sender.
        """
        if event_name != ISSUES_EVENT:
            logger.debug("Ignoring event type: %s", event_name)
            return None

        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        if payload.get("action") != LABELED_ACTION:
            logger.debug("Ignoring issues action: %s", payload.get("action"))
            return None

        issue = payload.get("issue")
        repo = payload.get("repository")
        if not isinstance(issue, dict) or not isinstance(repo, dict):
            logger.warning("Missing 'issue' or 'repository' in payload")
            return None

        label_name = self._name(payload.get("label"), "name")
        owner = self._name(repo.get("owner"), "login")
        sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}
        sender_login = self._name(sender, "login")
        if not label_name or not owner or not sender_login:
            logger.warning(
                "Missing label, owner or sender in payload",
                extra={"has_label": bool(label_name), "has_sender": bool(sender_login)},
            )
            return None

        number = issue.get("number")
        title = issue.get("title")
        name = repo.get("name")
        if not isinstance(number, int) or number <= 0:
            logger.warning("Invalid issue number: %s", number)
            return None
        if not isinstance(title, str) or not title.strip():
            logger.warning("Invalid or empty issue title")
            return None
        if not isinstance(name, str) or not name.strip():
            logger.warning("Invalid or empty repository name")
            return None

        body = issue.get("body")
        installation = payload.get("installation")
        installation_id = installation.get("id") if isinstance(installation, dict) else None
        sender_id = sender.get("id")

        event = IssueLabeledEvent(
            issue_number=number,
            title=title.strip(),
            body=body if isinstance(body, str) else "",
            label=label_name,
            owner=owner,
            repository=name.strip(),
            sender_login=sender_login,
            sender_id=sender_id if isinstance(sender_id, int) else None,
            installation_id=installation_id if isinstance(installation_id, int) else None,
        )
        logger.info(
            "Parsed labeled event: label=%s, issue=%s",
            event.label,
            event.issue_id,
        )
        return event

    @staticmethod
    def _name(data: Any, key: str) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()


def is_allowed_user(login: str, allowed_users: Iterable[str]) -> bool:
    """Case-insensitive allow-list check. An empty allow-list admits nobody."""
    allowed = {user.strip().lower() for user in allowed_users if user.strip()}
    return login.strip().lower() in allowed
