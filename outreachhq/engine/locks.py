"""
Per-campaign mutual exclusion.
"""
import asyncio
from typing import Dict


class CampaignLocks:
    """One asyncio.Lock per campaign id. Distinct campaigns never contend."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, campaign_id: str) -> asyncio.Lock:
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = self._locks[campaign_id] = asyncio.Lock()
        return lock

    def __contains__(self, campaign_id: str) -> bool:
        return campaign_id in self._locks
