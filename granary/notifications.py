"""Granary Notifications — new-signal alerts and the per-business daily digest.

Delivery itself (push, email, in-app) is pluggable through the
:class:`Notifier` protocol.  The default :class:`LoggingNotifier` writes each
message to the ``granary.notifications`` logger, which is enough for local
runs and tests.  Notification failures are logged and never propagate into
signal generation.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy import select

from granary.db import (
    Business,
    MarketingPreferences,
    MarketingSignal,
    SessionFactory,
    async_session,
    utcnow,
)
from granary.enums import SignalStatus, SignalStrength
from granary.signals.preferences import get_or_create_preferences, in_quiet_hours

logger = logging.getLogger("granary.notifications")

NEW_SIGNAL_WINDOW = timedelta(hours=1)

_STRENGTH_RANK = {
    SignalStrength.STRONG_BUY.value: 0,
    SignalStrength.STRONG_SELL.value: 1,
    SignalStrength.BUY.value: 2,
    SignalStrength.SELL.value: 3,
    SignalStrength.HOLD.value: 4,
}


class Notifier(Protocol):
    async def send(
        self, business_id: UUID, title: str, body: str, *, signal_id: Optional[UUID] = None
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only logs; used when no delivery channel is wired in."""

    async def send(
        self, business_id: UUID, title: str, body: str, *, signal_id: Optional[UUID] = None
    ) -> None:
        logger.info("Notify business=%s signal=%s | %s | %s", business_id, signal_id, title, body)


def _channels_enabled(prefs: MarketingPreferences) -> bool:
    return bool(prefs.push_enabled or prefs.email_enabled or prefs.in_app_enabled)


async def notify_new_signals(
    business_id: UUID,
    signals: Sequence[MarketingSignal],
    notifier: Optional[Notifier] = None,
    session_factory: Optional[SessionFactory] = None,
    now: Optional[datetime] = None,
) -> int:
    """Send one notification per signal created within the last hour.

    Skipped entirely during the business's quiet hours or when every
    channel is disabled.  Returns the number of notifications sent.
    """
    notifier = notifier or LoggingNotifier()
    now = now or utcnow()
    prefs = await get_or_create_preferences(business_id, session_factory)
    if not _channels_enabled(prefs) or in_quiet_hours(prefs, now.hour):
        logger.debug("Notifications suppressed for business=%s", business_id)
        return 0

    sent = 0
    for signal in signals:
        created = signal.created_at
        if created is not None and created.tzinfo is None:
            created = created.replace(tzinfo=now.tzinfo)
        if created is not None and now - created > NEW_SIGNAL_WINDOW:
            continue
        try:
            await notifier.send(business_id, signal.title, signal.summary, signal_id=signal.id)
            sent += 1
        except Exception:
            logger.exception("Notification failed business=%s signal=%s", business_id, signal.id)
    return sent


def format_digest(business_name: str, signals: Sequence[MarketingSignal], today: date) -> str:
    if not signals:
        return (
            f"Granary Daily Digest — {business_name} — {today.isoformat()}\n"
            "No active marketing signals.\n"
        )
    ordered = sorted(signals, key=lambda s: (_STRENGTH_RANK.get(s.strength, 9), s.commodity_type))
    lines = [
        f"Granary Daily Digest — {business_name} — {today.isoformat()}",
        f"Active signals: {len(signals)}",
        "=" * 60,
    ]
    for s in ordered:
        lines.append(f"[{s.strength}] {s.title}")
        lines.append(f"  {s.summary}")
        if s.recommended_action:
            lines.append(f"  Action: {s.recommended_action}")
    return "\n".join(lines)


async def daily_digest(
    notifier: Optional[Notifier] = None,
    session_factory: Optional[SessionFactory] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Send the active-signal digest to every business that has it enabled.

    Returns ``{"sent": n, "skipped": n, "errors": [...]}``.
    """
    notifier = notifier or LoggingNotifier()
    factory = session_factory or async_session
    now = now or utcnow()
    summary: dict = {"sent": 0, "skipped": 0, "errors": []}

    async with factory() as session:
        businesses = (
            await session.execute(select(Business).where(Business.is_active.is_(True)))
        ).scalars().all()

    for business in businesses:
        try:
            prefs = await get_or_create_preferences(business.id, factory)
            if not prefs.daily_digest_enabled or in_quiet_hours(prefs, now.hour):
                summary["skipped"] += 1
                continue
            async with factory() as session:
                signals = (
                    await session.execute(
                        select(MarketingSignal).where(
                            MarketingSignal.business_id == business.id,
                            MarketingSignal.status == SignalStatus.ACTIVE.value,
                        )
                    )
                ).scalars().all()
            body = format_digest(business.name, signals, now.date())
            await notifier.send(business.id, "Daily marketing digest", body)
            summary["sent"] += 1
        except Exception as exc:
            logger.error("Daily digest failed for business %s: %s", business.id, exc)
            summary["errors"].append(f"{business.id}: {exc}")

    logger.info("Daily digest: sent=%d skipped=%d", summary["sent"], summary["skipped"])
    return summary
