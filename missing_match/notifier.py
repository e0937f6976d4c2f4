"""
Alert notifiers

The pipeline calls `notify` once per match record whose `alert_sent` flag
it flipped. Delivery (SMS, e-mail, dashboards) lives outside this package;
implementations only need the async `notify` method.
"""
import logging
from typing import Protocol

from missing_match.schemas import MatchRecord

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, record: MatchRecord) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the alert to the application log."""

    async def notify(self, record: MatchRecord) -> None:
        logger.warning(
            f"ALERT: submission {record.submission_id} matched case {record.case_id} "
            f"(confidence: {record.confidence:.2%}, record {record.id})"
        )
