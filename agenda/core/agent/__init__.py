"""
Agent Module

- Tools: the domain operations the model may call
- Orchestrator: the bounded model/tool loop
"""

from agenda.core.agent.tools import ToolCatalog, ToolContext, ToolKind
from agenda.core.agent.orchestrator import (
    FALLBACK_REPLY,
    OrchestrationResult,
    OrchestratorState,
    ToolOrchestrator,
)

__all__ = [
    "ToolCatalog",
    "ToolContext",
    "ToolKind",
    "FALLBACK_REPLY",
    "OrchestrationResult",
    "OrchestratorState",
    "ToolOrchestrator",
]
