# pending.py
"""
Airkeeper – Pending updates
===========================
Pairs "update requested" events with "update fulfilled" events by request
id. An unmatched request means an update may still be in flight; before
suppressing the job the chain is asked whether that request is really
awaiting fulfillment. If that question cannot be answered the job is
treated as pending.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from airkeeper.chain_reader import ChainReader
from airkeeper.contracts import EventRecord
from airkeeper.exceptions import ChainReadFailed, PendingUpdateUnknown
from airkeeper.loggingconfig import setup_logging

logger = setup_logging("PendingUpdates", level=logging.INFO)


def _normalise(request_id: Optional[str]) -> Optional[str]:
    return request_id.lower() if isinstance(request_id, str) else request_id


def pending_request_ids(
    requested_events: Iterable[EventRecord],
    fulfilled_events: Iterable[EventRecord],
) -> List[str]:
    """Request ids with no matching fulfillment, in request order."""
    fulfilled = {_normalise(event.request_id) for event in fulfilled_events}
    return [
        event.request_id
        for event in requested_events
        if _normalise(event.request_id) not in fulfilled
    ]


def has_pending_update(
    requested_events: Iterable[EventRecord],
    fulfilled_events: Iterable[EventRecord],
) -> bool:
    return bool(pending_request_ids(requested_events, fulfilled_events))


class PendingUpdateDetector:
    """Event matching plus the on-chain awaiting-fulfillment check."""

    def __init__(self, reader: ChainReader) -> None:
        self.reader = reader

    async def is_pending(
        self,
        requested_events: Iterable[EventRecord],
        fulfilled_events: Iterable[EventRecord],
    ) -> bool:
        """
        True when at least one unmatched request is still awaiting fulfillment.

        Raises:
            PendingUpdateUnknown: the awaiting-fulfillment check failed; callers
                must not submit.
        """
        for request_id in pending_request_ids(requested_events, fulfilled_events):
            try:
                awaiting = await self.reader.request_is_awaiting_fulfillment(request_id)
            except ChainReadFailed as exc:
                raise PendingUpdateUnknown(
                    f"could not check whether request {request_id} is awaiting fulfillment: {exc.message}"
                ) from exc
            if awaiting:
                return True
            logger.debug("request %s is no longer awaiting fulfillment", request_id)
        return False
