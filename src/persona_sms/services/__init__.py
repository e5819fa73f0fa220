"""External collaborators: reply generation and SMS delivery."""

from .delivery import DeliveryClient, SendBlueClient
from .generation import AnthropicReplyGenerator, GenerationResult, ReplyGenerator

__all__ = [
    "DeliveryClient",
    "SendBlueClient",
    "AnthropicReplyGenerator",
    "GenerationResult",
    "ReplyGenerator",
]
