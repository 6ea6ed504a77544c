"""
agentd - supervises interactive coding CLIs through pseudo-terminals
"""

__version__ = "0.1.0"

from .models import (
    AgentError,
    AgentResult,
    AgentStatus,
    AgentType,
    Observation,
    ObserverAction,
    SpawnOptions,
    TerminalState,
)
from .observer import LLMStateClassifier, StateClassifier
from .terminal_agent import AgentSettings, TerminalAgent
from .agent_pool import AgentPool

__all__ = [
    'AgentError',
    'AgentResult',
    'AgentStatus',
    'AgentType',
    'Observation',
    'ObserverAction',
    'SpawnOptions',
    'TerminalState',
    'StateClassifier',
    'LLMStateClassifier',
    'AgentSettings',
    'TerminalAgent',
    'AgentPool',
]
