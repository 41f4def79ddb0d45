from .cascade import CascadeError, ModelCascade
from .common import Framing, InboundMessage, ModelReply
from .consolidation import ConsolidationPipeline
from .history import ChannelHistory, HistoryBuffer
from .orchestrator import ConversationOrchestrator, TurnOutcome
from .registry import PersonaError, PersonaRegistry
from .renderer import DeliveryError, ImpersonationCache, ResponseRenderer
from .trigger import TriggerResolver

__all__ = [
    "CascadeError",
    "ChannelHistory",
    "ConsolidationPipeline",
    "ConversationOrchestrator",
    "DeliveryError",
    "Framing",
    "HistoryBuffer",
    "ImpersonationCache",
    "InboundMessage",
    "ModelCascade",
    "ModelReply",
    "PersonaError",
    "PersonaRegistry",
    "ResponseRenderer",
    "TriggerResolver",
    "TurnOutcome",
]
