"""
MCP Connection Management

This module provides the live connection to a single upstream MCP server and
the per-session registry that owns those connections, supporting SSE,
streamable HTTP and WebSocket transports.
"""

import asyncio
import logging
import time
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.client.websocket import websocket_client

from gov_assistant import config
from gov_assistant.errors import (
    ConnectionNotReadyError,
    MCPConnectionError,
    ServerNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class TransportKind(str, Enum):
    SSE = 'sse'
    HTTP_STREAMING = 'http-streaming'
    WEBSOCKET = 'websocket'

    @classmethod
    def from_server_type(cls, server_type: Optional[str], url: str) -> 'TransportKind':
        """
        Map the browser's server type onto a transport

        `bitte-proxy` servers speak streamable HTTP, `direct` servers speak SSE,
        and ws:// or wss:// URLs always use the WebSocket transport.
        """
        if urlparse(url).scheme in ('ws', 'wss'):
            return cls.WEBSOCKET
        server_type = (server_type or 'direct').lower()
        if server_type in ('bitte-proxy', 'bitte', 'http', 'http-streaming'):
            return cls.HTTP_STREAMING
        if server_type in ('direct', 'sse'):
            return cls.SSE
        raise ValidationError(f'Unknown MCP server type "{server_type}"')


class ConnectionState(str, Enum):
    CONNECTING = 'connecting'
    READY = 'ready'
    ERROR = 'error'


class MCPConnection:
    """
    Live client connection to one upstream MCP server

    The transport and `ClientSession` context managers are entered and exited
    inside a single runner task, since the MCP SDK's anyio task groups must be
    closed by the task that opened them. Requests are issued from any task on
    the same event loop and are serialized by a per-connection lock.
    """

    def __init__(self, name: str, url: str, transport_kind: TransportKind,
                 headers: Optional[Dict[str, str]] = None,
                 connect_timeout: float = None, read_timeout: float = None,
                 request_timeout: float = None):
        self.name = name
        self.url = url
        self.transport_kind = TransportKind(transport_kind)
        self.headers = headers or {}
        self.connect_timeout = connect_timeout or config.MCP_CONNECT_TIMEOUT
        self.read_timeout = read_timeout or config.MCP_SSE_READ_TIMEOUT
        self.request_timeout = request_timeout or config.MCP_TOOL_TIMEOUT

        self.state = ConnectionState.CONNECTING
        self.last_error: Optional[str] = None
        self.session: Optional[ClientSession] = None
        self.capabilities = None
        self.server_info = None
        self.created_at = time.time()
        self.request_count = 0
        self.error_count = 0

        self._runner: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._request_lock = asyncio.Lock()
        self._closing = False

    def _open_transport(self):
        if self.transport_kind is TransportKind.SSE:
            return sse_client(
                self.url,
                headers=self.headers,
                timeout=self.connect_timeout,
                sse_read_timeout=self.read_timeout,
            )
        if self.transport_kind is TransportKind.HTTP_STREAMING:
            return streamablehttp_client(
                self.url,
                headers=self.headers,
                timeout=timedelta(seconds=self.connect_timeout),
                sse_read_timeout=timedelta(seconds=self.read_timeout),
            )
        return websocket_client(self.url)

    async def _run(self, ready: asyncio.Future):
        try:
            async with self._open_transport() as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(read_stream, write_stream) as session:
                    init_result = await session.initialize()
                    self.session = session
                    self.capabilities = init_result.capabilities
                    self.server_info = init_result.serverInfo
                    if not ready.done():
                        ready.set_result(init_result)
                    await self._stop.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            elif not self._closing:
                logger.error(f"MCP transport for {self.name} closed unexpectedly: {str(e)}")
                self.state = ConnectionState.ERROR
                self.last_error = str(e)
        finally:
            self.session = None

    async def connect(self):
        """
        Open the transport and perform the MCP initialize handshake

        Raises:
            MCPConnectionError: handshake failed or timed out; the connection
                is left in the `error` state with the message recorded
        """
        logger.info(f"Connecting to MCP server {self.name} ({self.transport_kind.value}): {self.url}")
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        self._stop = asyncio.Event()
        self._runner = loop.create_task(self._run(ready))

        try:
            await asyncio.wait_for(ready, timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._runner.cancel()
            self._fail(f"Handshake timed out after {self.connect_timeout}s")
        except Exception as e:
            self._fail(f"Handshake failed: {str(e)}")

        self.state = ConnectionState.READY
        self.last_error = None
        logger.info(f"Connected to MCP server {self.name}")

    def _fail(self, message: str):
        self.state = ConnectionState.ERROR
        self.last_error = message
        logger.error(f"MCP server {self.name}: {message}")
        raise MCPConnectionError(message)

    def _require_session(self) -> ClientSession:
        if self.state is not ConnectionState.READY or self.session is None:
            raise ConnectionNotReadyError(self.name, self.state.value)
        return self.session

    async def _request(self, factory: Callable):
        session = self._require_session()
        async with self._request_lock:
            self.request_count += 1
            try:
                return await asyncio.wait_for(factory(session), timeout=self.request_timeout)
            except Exception:
                self.error_count += 1
                raise

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch every tool the server currently exposes, following pagination"""
        tools = []
        cursor = None
        while True:
            result = await self._request(lambda s, c=cursor: s.list_tools(c))
            for tool in result.tools:
                tools.append({
                    'name': tool.name,
                    'description': tool.description,
                    'inputSchema': tool.inputSchema or {},
                    'serverId': self.name,
                })
            cursor = result.nextCursor
            if not cursor:
                return tools

    async def list_prompts(self) -> List[Dict[str, Any]]:
        if not (self.capabilities and self.capabilities.prompts):
            return []
        result = await self._request(lambda s: s.list_prompts())
        return [
            {**prompt.model_dump(mode='json', exclude_none=True), 'serverId': self.name}
            for prompt in result.prompts
        ]

    async def list_resources(self) -> List[Dict[str, Any]]:
        if not (self.capabilities and self.capabilities.resources):
            return []
        result = await self._request(lambda s: s.list_resources())
        return [
            {**resource.model_dump(mode='json', exclude_none=True), 'serverId': self.name}
            for resource in result.resources
        ]

    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Invoke a tool and return the raw MCP result as JSON-compatible data"""
        logger.info(f"Calling tool '{tool_name}' on MCP server: {self.name}")
        result = await self._request(lambda s: s.call_tool(tool_name, arguments or {}))
        return result.model_dump(mode='json', by_alias=True, exclude_none=True)

    async def close(self):
        """Close the transport, waiting briefly for the runner task to unwind"""
        self._closing = True
        if self._stop is not None:
            self._stop.set()
        if self._runner is not None and not self._runner.done():
            try:
                await asyncio.wait_for(self._runner, timeout=5)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out closing MCP server {self.name}, cancelling transport")
                self._runner.cancel()
        logger.info(f"Disconnected from MCP server: {self.name}")

    def summary(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'url': self.url,
            'type': self.transport_kind.value,
            'state': self.state.value,
            'error': self.last_error,
        }


ConnectionFactory = Callable[[str, str, TransportKind], MCPConnection]


class MCPConnectionRegistry:
    """
    Owns the upstream connections of one session, keyed by logical server name

    Every method runs on the owning session's event loop, so a `connecting`
    entry inserted before the first suspension point is visible to any add or
    describe that interleaves with the handshake.
    """

    def __init__(self, connection_factory: Optional[ConnectionFactory] = None):
        self._connections: Dict[str, MCPConnection] = {}
        self._connection_factory = connection_factory or MCPConnection

    def __contains__(self, name: str) -> bool:
        return name in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def names(self) -> List[str]:
        return list(self._connections.keys())

    async def add(self, name: str, url: str, transport_kind: TransportKind) -> Dict[str, Any]:
        """
        Connect an upstream server under `name`

        A name that is already ready or still connecting is left alone. A
        handshake failure is recorded on the entry rather than raised, so the
        slot stays visible with its error.

        Returns:
            Connection summary dict (name, url, type, state, error)
        """
        existing = self._connections.get(name)
        if existing and existing.state in (ConnectionState.READY, ConnectionState.CONNECTING):
            logger.info(f"MCP server {name} already {existing.state.value}, skipping add")
            return existing.summary()

        connection = self._connection_factory(name, url, transport_kind)
        self._connections[name] = connection
        if existing:
            await self._close_quietly(existing)

        try:
            await connection.connect()
        except MCPConnectionError as e:
            logger.error(f"Failed to connect MCP server {name}: {str(e)}")
            return connection.summary()

        if self._connections.get(name) is not connection:
            # removed or replaced while the handshake was in flight
            await self._close_quietly(connection)
            return connection.summary()

        try:
            tools = await connection.list_tools()
            logger.info(f"Discovered {len(tools)} tools from MCP server: {name}")
        except Exception as e:
            logger.warning(f"Initial tool listing failed for MCP server {name}: {str(e)}")

        return connection.summary()

    async def remove(self, name: str):
        """
        Close and forget a connection

        Raises:
            ServerNotFoundError: no server registered under `name`
        """
        connection = self._connections.pop(name, None)
        if connection is None:
            raise ServerNotFoundError(name)
        await self._close_quietly(connection)
        logger.info(f"Removed MCP server: {name}")

    def resolve(self, server_id: str) -> MCPConnection:
        connection = self._connections.get(server_id)
        if connection is None:
            raise ServerNotFoundError(server_id)
        if connection.state is not ConnectionState.READY:
            raise ConnectionNotReadyError(server_id, connection.state.value)
        return connection

    async def describe(self) -> Dict[str, Any]:
        """
        Aggregate tools, prompts and resources across every connection

        Listings run concurrently and fail independently: a server whose
        listing raises is reported with `state: error` and contributes nothing.
        """
        connections = list(self._connections.values())

        async def _describe_one(connection):
            if connection.state is not ConnectionState.READY:
                return [], [], []
            tools = await connection.list_tools()
            prompts = await connection.list_prompts()
            resources = await connection.list_resources()
            return tools, prompts, resources

        results = await asyncio.gather(*(_describe_one(c) for c in connections), return_exceptions=True)

        state = {'tools': [], 'servers': {}, 'prompts': [], 'resources': []}
        for connection, result in zip(connections, results):
            server = connection.summary()
            if isinstance(result, BaseException):
                logger.warning(f"Listing failed for MCP server {connection.name}: {str(result)}")
                server['state'] = ConnectionState.ERROR.value
                server['error'] = str(result) or result.__class__.__name__
            else:
                tools, prompts, resources = result
                state['tools'].extend(tools)
                state['prompts'].extend(prompts)
                state['resources'].extend(resources)
            state['servers'][connection.name] = server
        return state

    async def close_all(self):
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await self._close_quietly(connection)

    async def _close_quietly(self, connection: MCPConnection):
        try:
            await connection.close()
        except Exception as e:
            logger.error(f"Error closing connection for {connection.name}: {str(e)}")
