from .recipient import Recipient
from .template import Template
from .queued_message import QueuedMessage

__all__ = [
    "Recipient",
    "Template",
    "QueuedMessage",
]
