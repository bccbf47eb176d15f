"""
Notification Channels and Templates

Delivery is pluggable. The default channel only logs the message; when
NOTIFICATION_WEBHOOK_URL is set, messages are POSTed to an email relay.
Recipients may be ciphertext: the relay (or the encryption subsystem
behind it) resolves them, this service never decrypts.
"""
import logging
import os
from typing import Any, Dict, Optional

import httpx

from ...models.engine_models import Notification


logger = logging.getLogger(__name__)

NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))


# =============================================================================
# CHANNELS
# =============================================================================

class NotificationChannel:
    """Base channel. send() raises on failure; the sink catches."""

    name = "base"

    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LogNotificationChannel(NotificationChannel):
    """Writes the message to the service log instead of delivering it."""

    name = "log"

    def send(self, notification: Notification) -> None:
        logger.info(
            f"Notification [{notification.template}] to {notification.recipient}: "
            f"{notification.subject}"
        )


class WebhookNotificationChannel(NotificationChannel):
    """POSTs the rendered message to an email relay endpoint."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = NOTIFICATION_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        response = httpx.post(
            self.url,
            json={
                "template": notification.template,
                "to": notification.recipient,
                "subject": notification.subject,
                "body": notification.body,
                "payload": notification.payload,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


def get_notification_channel() -> NotificationChannel:
    """Channel selected by environment."""
    if NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationChannel(NOTIFICATION_WEBHOOK_URL)
    return LogNotificationChannel()


# =============================================================================
# TEMPLATES
# =============================================================================

HEIR_ACTIVATION_BODY = """Inheritance Plan Activated

Dear {heir_name},

An inheritance plan has been activated: {plan_name}

Instructions left for you:
{instructions}

Next steps:
1. Log in to the Sign-Off app
2. Verify your identity
3. Access your granted vaults

This is an automated notification. Please do not reply to this email.
"""

TRUSTED_CONTACT_BODY = """Vault Handling Requested

You were named as the trusted contact for the vault "{vault_name}".
Its owner's inheritance plan has been activated and the vault now needs
to be handled according to their wishes.

This is an automated notification. Please do not reply to this email.
"""

SIGNOFF_TASK_BODY = """Sign-off task queued for vault {vault_id} (owner {user_id}).
Manual handling by the sign-off team is required.
"""


def heir_activation_notification(heir, plan) -> Notification:
    """Heir email carrying the plan's (encrypted) instructions."""
    plan_name = plan.plan_name or "Unnamed Plan"
    return Notification(
        template="heir_activation",
        recipient=heir.email_encrypted,
        subject=f"Inheritance Plan Activated - {plan_name}",
        body=HEIR_ACTIVATION_BODY.format(
            heir_name=heir.full_name_encrypted or "Heir",
            plan_name=plan_name,
            instructions=plan.instructions_encrypted or "No instructions provided",
        ),
        payload={
            "heir_id": heir.id,
            "plan_id": plan.id,
            "plan_type": getattr(plan.plan_type, "value", plan.plan_type),
            "instructions_encrypted": plan.instructions_encrypted,
        },
    )


def trusted_contact_notification(vault, contact_email: Optional[str]) -> Notification:
    return Notification(
        template="trusted_contact",
        recipient=contact_email,
        subject="Vault handling requested",
        body=TRUSTED_CONTACT_BODY.format(vault_name=vault.name or vault.id),
        payload={"vault_id": vault.id},
    )


def signoff_task_notification(vault) -> Notification:
    payload: Dict[str, Any] = {"vault_id": vault.id, "user_id": vault.user_id}
    return Notification(
        template="signoff_task",
        recipient=None,  # Operator queue
        subject=f"Sign-off task for vault {vault.id}",
        body=SIGNOFF_TASK_BODY.format(vault_id=vault.id, user_id=vault.user_id),
        payload=payload,
    )
