"""
MCP (Model Context Protocol) Client Package for the Governance Assistant

This package holds the per-session client side of the gateway: live
connections to upstream MCP servers and the query pipeline that runs
governance questions against them.

Components:
- connection: Upstream connections and the per-session registry
- tools: Tool argument validation and invocation
- translator: Query planning (which tools to call, with what arguments)
- extraction: Tool result unwrapping and proposal/discussion normalization
- orchestrator: Query pipeline driver and event streaming
"""

from .connection import ConnectionState, MCPConnection, MCPConnectionRegistry, TransportKind
from .extraction import ExtractionResult, extract
from .tools import MCPToolInvoker, ToolInvocationPlan, ToolInvocationResult
from .translator import MCPQueryPlanner
from .orchestrator import GovernanceOrchestrator, QueryPhase, QuerySession

__all__ = [
    'ConnectionState',
    'MCPConnection',
    'MCPConnectionRegistry',
    'TransportKind',
    'ExtractionResult',
    'extract',
    'MCPToolInvoker',
    'ToolInvocationPlan',
    'ToolInvocationResult',
    'MCPQueryPlanner',
    'GovernanceOrchestrator',
    'QueryPhase',
    'QuerySession',
]

__version__ = "1.0.0"
