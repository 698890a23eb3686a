"""threadpilot - conversation threads, checkpoints and the agent loop of a coding assistant."""

__version__ = "0.1.0"

from threadpilot.agent import AgentLoop
from threadpilot.checkpoints import CheckpointEngine
from threadpilot.config import Config, get_config, set_config
from threadpilot.plans import PlanManager
from threadpilot.service import ChatThreadService
from threadpilot.store import Thread, ThreadStore

__all__ = [
    "AgentLoop",
    "ChatThreadService",
    "CheckpointEngine",
    "Config",
    "PlanManager",
    "Thread",
    "ThreadStore",
    "get_config",
    "set_config",
]
