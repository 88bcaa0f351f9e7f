"""
MCP Tool Invocation

This module validates tool arguments against the tool's input schema and runs
planned tool calls against the session's connection registry, isolating each
invocation so one failing server never aborts the others.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from jsonschema import SchemaError, validate, ValidationError as JsonSchemaValidationError

from gov_assistant.errors import MCPConnectionError, ToolInvocationError
from gov_assistant.logging_utils import log_performance

logger = logging.getLogger(__name__)


@dataclass
class ToolInvocationPlan:
    server_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    role: str = 'unknown'
    reason: str = ''
    input_schema: Optional[Dict[str, Any]] = None
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class ToolInvocationResult:
    call_id: str
    server_id: str
    tool_name: str
    arguments: Dict[str, Any]
    success: bool
    result: Any = None
    error: Optional[str] = None
    response_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'callId': self.call_id,
            'serverId': self.server_id,
            'toolName': self.tool_name,
            'arguments': self.arguments,
            'success': self.success,
            'error': self.error,
            'responseTimeMs': self.response_time_ms,
        }


def validate_arguments(schema: Optional[Dict[str, Any]], arguments: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate arguments against a tool's JSON input schema

    Returns:
        {'valid': bool, 'error': str|None, 'errors': [str]}
    """
    if not schema:
        return {'valid': True, 'error': None, 'errors': []}
    try:
        validate(instance=arguments, schema=schema)
        return {'valid': True, 'error': None, 'errors': []}
    except JsonSchemaValidationError as e:
        return {'valid': False, 'error': str(e.message), 'errors': [str(e.message)]}
    except SchemaError as e:
        # a broken upstream schema should not block the call
        logger.warning(f"Ignoring invalid tool input schema: {str(e.message)}")
        return {'valid': True, 'error': None, 'errors': []}


ToolEventListener = Callable[[str, ToolInvocationPlan, Optional[ToolInvocationResult]], None]


class MCPToolInvoker:
    """
    Runs tool calls against the connections of one session's registry
    """

    def __init__(self, registry):
        self.registry = registry

    async def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any],
                        input_schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Direct passthrough call returning the raw MCP tool result

        Raises:
            ServerNotFoundError / ConnectionNotReadyError: no ready connection
            ToolInvocationError: arguments do not match the tool's input schema
        """
        connection = self.registry.resolve(server_id)
        validation = validate_arguments(input_schema, arguments)
        if not validation['valid']:
            raise ToolInvocationError(f"Invalid arguments: {validation['error']}")
        return await connection.call_tool(tool_name, arguments)

    async def invoke(self, plan: ToolInvocationPlan) -> ToolInvocationResult:
        """Run one planned call; every failure is folded into the result"""
        start_time = time.time()

        def _result(success, result=None, error=None):
            return ToolInvocationResult(
                call_id=plan.call_id,
                server_id=plan.server_id,
                tool_name=plan.tool_name,
                arguments=plan.arguments,
                success=success,
                result=result,
                error=error,
                response_time_ms=int((time.time() - start_time) * 1000),
            )

        try:
            result = await self.call_tool(plan.server_id, plan.tool_name, plan.arguments, plan.input_schema)
        except (MCPConnectionError, ToolInvocationError) as e:
            logger.warning(f"Tool {plan.tool_name} on {plan.server_id} failed: {str(e)}")
            return _result(False, error=str(e))
        except asyncio.TimeoutError:
            logger.warning(f"Tool {plan.tool_name} on {plan.server_id} timed out")
            return _result(False, error="Tool call timed out")
        except Exception as e:
            logger.error(f"Error executing tool {plan.tool_name} on server {plan.server_id}: {str(e)}")
            return _result(False, error=str(e) or e.__class__.__name__)

        if isinstance(result, dict) and result.get('isError'):
            message = _first_text(result) or 'Tool reported an error'
            logger.warning(f"Tool {plan.tool_name} on {plan.server_id} returned an error: {message}")
            return _result(False, result=result, error=message)

        outcome = _result(True, result=result)
        log_performance(f"tool {plan.server_id}:{plan.tool_name}", outcome.response_time_ms)
        return outcome

    async def execute_all(self, plans: List[ToolInvocationPlan],
                          listener: Optional[ToolEventListener] = None) -> List[ToolInvocationResult]:
        """
        Execute every plan concurrently

        Results come back in plan order. Calls aimed at the same connection
        queue behind that connection's request lock.
        """
        if not plans:
            return []

        logger.info(f"Executing {len(plans)} tool calls")

        async def _run(plan):
            if listener:
                listener('start', plan, None)
            result = await self.invoke(plan)
            if listener:
                listener('end', plan, result)
            return result

        return list(await asyncio.gather(*(_run(plan) for plan in plans)))


def _first_text(result: Dict[str, Any]) -> Optional[str]:
    for block in result.get('content') or []:
        if isinstance(block, dict) and block.get('type') == 'text':
            return block.get('text')
    return None
