"""Web-push delivery of the daily "new puzzle" notification."""
from __future__ import annotations

import asyncio
import json
import logging

from pywebpush import WebPushException, webpush

from . import config
from .const import DAILY_NOTIFICATION, NOTIFICATION_BATCH_SIZE, NOTIFICATION_TTL, SUBSCRIPTION_ACTIVE_DAYS
from .dates import today_key
from .models import PushSubscription
from .storage import PuzzleStore, SubscriptionStore

_LOGGER = logging.getLogger(__name__)

EXPIRED_STATUS_CODES = (404, 410)


class NotificationError(Exception):
    """Notifications cannot be sent at all (no keys, no puzzle, store down)."""


def _subscription_info(subscription: PushSubscription) -> dict:
    return {
        "endpoint": subscription.endpoint,
        "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
    }


class NotificationSender:
    """Sends web-push messages, pruning endpoints the push service rejects."""

    def __init__(
        self,
        database,
        vapid_private_key: str | None = None,
        vapid_email: str | None = None,
        send=None,
    ) -> None:
        self.database = database
        self.vapid_private_key = vapid_private_key or config.VAPID_PRIVATE_KEY
        self.vapid_email = vapid_email or config.VAPID_EMAIL
        self._send = send or webpush

    async def _push(self, subscription: PushSubscription, payload: str) -> str:
        """Deliver one message. Returns "sent", "expired" or "error"."""
        try:
            await asyncio.to_thread(
                self._send,
                subscription_info=_subscription_info(subscription),
                data=payload,
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_email},
                ttl=NOTIFICATION_TTL,
            )
        except WebPushException as e:
            status = getattr(e.response, "status_code", None)
            if status in EXPIRED_STATUS_CODES:
                return "expired"
            _LOGGER.warning("Push to %s failed (%s): %s", subscription.endpoint[:60], status, e)
            return "error"
        except Exception as e:
            # requests transport failures (unreachable endpoint, TLS, ...)
            _LOGGER.warning("Push to %s failed: %s", subscription.endpoint[:60], e)
            return "error"
        return "sent"

    async def send_daily_notifications(self) -> dict:
        """Notify recent subscribers that today's puzzle is out.

        Raises:
            NotificationError: VAPID keys missing, no puzzle today, or the
                subscription list could not be read
        """
        if not self.vapid_private_key:
            raise NotificationError("VAPID keys are not configured")

        date_key = today_key()
        async with self.database.session() as session:
            puzzle = await PuzzleStore(session).find_for_day(date_key)
            if not puzzle.success or puzzle.data is None:
                raise NotificationError(f"No puzzle available for {date_key}")

            subscriptions = await SubscriptionStore(session).active(SUBSCRIPTION_ACTIVE_DAYS)
            if not subscriptions.success:
                raise NotificationError(subscriptions.error.message)

        payload = json.dumps({**DAILY_NOTIFICATION, "data": {"url": "/", "puzzleId": puzzle.data.id}})
        targets = subscriptions.data
        counts = {"sent": 0, "errors": 0, "expired": 0, "total": len(targets)}
        expired: list[str] = []

        for offset in range(0, len(targets), NOTIFICATION_BATCH_SIZE):
            batch = targets[offset:offset + NOTIFICATION_BATCH_SIZE]
            outcomes = await asyncio.gather(*(self._push(sub, payload) for sub in batch))
            for subscription, outcome in zip(batch, outcomes):
                if outcome == "sent":
                    counts["sent"] += 1
                elif outcome == "expired":
                    counts["expired"] += 1
                    expired.append(subscription.endpoint)
                else:
                    counts["errors"] += 1

        if expired:
            async with self.database.session() as session:
                store = SubscriptionStore(session)
                for endpoint in expired:
                    result = await store.delete_endpoint(endpoint)
                    if not result.success:
                        _LOGGER.warning("Could not remove expired subscription: %s", result.error.message)

        _LOGGER.info(
            "Daily notifications: %d sent, %d errors, %d expired of %d",
            counts["sent"], counts["errors"], counts["expired"], counts["total"],
        )
        return counts
