"""
Campaign registry: explicit campaign-id lookup for the API layer.
"""
from typing import Dict, List, Optional

from ..errors import NotFoundError
from ..services.delivery import DeliveryQueuePublisher
from .locks import CampaignLocks
from .orchestrator import GenerationOrchestrator
from .state_machine import CampaignNotifier, CampaignStateMachine, CampaignStatus


class CampaignRegistry:
    """Creates campaigns and finds them again by id."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        publisher: DeliveryQueuePublisher,
        locks: CampaignLocks,
        notifier: Optional[CampaignNotifier] = None,
    ):
        self.orchestrator = orchestrator
        self.publisher = publisher
        self.locks = locks
        self.notifier = notifier
        self._campaigns: Dict[str, CampaignStateMachine] = {}

    def create(self) -> CampaignStateMachine:
        machine = CampaignStateMachine(
            self.orchestrator,
            self.publisher,
            self.locks,
            notifier=self.notifier,
        )
        self._campaigns[machine.id] = machine
        return machine

    def get(self, campaign_id: str) -> CampaignStateMachine:
        machine = self._campaigns.get(campaign_id)
        if machine is None:
            raise NotFoundError(f"Campaign '{campaign_id}' not found", {"campaign_id": campaign_id})
        return machine

    def list(self, status: Optional[CampaignStatus] = None) -> List[CampaignStateMachine]:
        """Campaigns newest first, optionally filtered by status."""
        machines = [m for m in self._campaigns.values() if status is None or m.status == status]
        return sorted(machines, key=lambda m: m.campaign.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._campaigns)
