"""
Exception taxonomy for the governance assistant.

Only credential and validation errors are surfaced to the browser as hard
HTTP errors; everything else is caught at the component boundary and degraded
to partial or placeholder data.
"""


class GovernanceAssistantError(Exception):
    """Base class for all errors raised by this package"""


class ValidationError(GovernanceAssistantError):
    """Request payload is missing fields or has the wrong shape"""


class InvalidAPIKeyError(GovernanceAssistantError):
    """LLM API key is missing or malformed"""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class MCPConnectionError(GovernanceAssistantError):
    """Handshake or transport failure talking to an upstream MCP server"""


class ServerNotFoundError(MCPConnectionError):
    def __init__(self, server_id: str):
        super().__init__(f'MCP server "{server_id}" not found')
        self.server_id = server_id


class ConnectionNotReadyError(MCPConnectionError):
    def __init__(self, server_id: str, state: str):
        super().__init__(f'MCP server "{server_id}" is not ready (state: {state})')
        self.server_id = server_id
        self.state = state


class ToolInvocationError(GovernanceAssistantError):
    """Remote tool reported an error or its arguments failed validation"""


class LLMError(GovernanceAssistantError):
    """Base class for LLM completion failures"""


class LLMRequestError(LLMError):
    def __init__(self, status: int, body: str = ''):
        super().__init__(f'LLM request failed with status {status}: {body[:200]}')
        self.status = status
        self.body = body


class LLMOverloadedError(LLMError):
    def __init__(self, attempts: int):
        super().__init__(f'LLM service overloaded after {attempts} attempts')
        self.attempts = attempts


class SinkClosedError(GovernanceAssistantError):
    """Event written to a sink whose consumer has gone away"""
