"""
Trigger Selector — picks the entry flow for a contact with no active session.

A flow matches when any of its trigger keywords appears (case-insensitive
substring) in the inbound text. Only active flows owned by the connection,
or by the department routed to it, are candidates. Ties go to the lowest
priority, then the oldest flow, then the lowest id, so the same text
always selects the same flow.
"""
from __future__ import annotations

import structlog
from typing import Iterable, Optional

from flows.cache import FlowCache
from models.schemas import Flow

logger = structlog.get_logger()


def _normalize(text: str) -> str:
    return " ".join((text or "").casefold().split())


def flow_matches(flow: Flow, text: str) -> bool:
    haystack = _normalize(text)
    if not haystack:
        return False
    return any(kw and _normalize(kw) in haystack for kw in flow.trigger_keywords)


def match_flow(
    flows: Iterable[Flow],
    connection_id: str,
    text: str,
    department_id: str = "",
) -> Optional[Flow]:
    """Pure selection over an explicit flow list."""
    candidates = [
        f for f in flows
        if f.is_active
        and (f.connection_id == connection_id
             or (department_id and f.department_id == department_id))
    ]
    candidates.sort(key=lambda f: (f.priority, f.created_at, f.id))
    return next((f for f in candidates if flow_matches(f, text)), None)


class TriggerSelector:

    def __init__(self, flow_cache: FlowCache):
        self._cache = flow_cache

    async def select_flow(self, connection_id: str, text: str, department_id: str = "") -> Optional[str]:
        catalog = await self._cache.get_catalog(connection_id)
        flow = match_flow(catalog, connection_id, text, department_id)
        if flow is None:
            logger.debug("no_trigger_match", connection_id=connection_id)
            return None
        logger.info("trigger_matched", connection_id=connection_id, flow_id=flow.id)
        return flow.id
