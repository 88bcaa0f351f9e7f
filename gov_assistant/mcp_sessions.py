"""
MCP Session Management

Every browser session gets its own `SessionActor`: a private asyncio event
loop running in a daemon thread that owns the session's upstream connection
registry, event emitter and in-flight query sessions. Flask request threads
never touch that state directly; they hand coroutines to the actor's loop.
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional

from gov_assistant import config
from gov_assistant.events import SessionEventEmitter
from gov_assistant.logging_utils import add_log_entry
from gov_assistant.mcp_client.connection import MCPConnectionRegistry, TransportKind
from gov_assistant.mcp_client.orchestrator import GovernanceOrchestrator, QuerySession

logger = logging.getLogger(__name__)

SCOPE_PROPOSAL = 'proposal'
SCOPE_ECOSYSTEM = 'ecosystem'


class SessionActor:
    """
    Owns all MCP state of one user session

    Public methods are called from Flask request threads and block until the
    actor's loop has done the work (`call`), or schedule it and return
    immediately (`submit`).
    """

    def __init__(self, session_id: str, connection_factory=None, llm_client_factory=None,
                 auto_connect: Optional[bool] = None):
        self.session_id = session_id
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.closed = False

        self.registry = MCPConnectionRegistry(connection_factory)
        self.emitter = SessionEventEmitter()
        self.orchestrator = GovernanceOrchestrator(
            self.registry, emitter=self.emitter, llm_client_factory=llm_client_factory,
        )
        self.invoker = self.orchestrator.invoker
        self.query_sessions: Dict[str, QuerySession] = {}
        self._cleanup_handles: Dict[str, asyncio.TimerHandle] = {}

        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, name=f"mcp-session-{session_id[:12]}", daemon=True,
        )
        self._thread.start()
        logger.info(f"Created MCP session actor: {session_id}")

        if config.AUTO_CONNECT_DEFAULTS if auto_connect is None else auto_connect:
            self.submit(self._connect_defaults())

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def touch(self):
        self.last_activity = time.time()

    def is_idle(self, idle_timeout: float, now: Optional[float] = None) -> bool:
        return ((now or time.time()) - self.last_activity) > idle_timeout

    def call(self, coro, timeout: Optional[float] = None):
        """Run a coroutine on the actor's loop and wait for its result"""
        self.touch()
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout or config.ACTOR_CALL_TIMEOUT)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def submit(self, coro) -> concurrent.futures.Future:
        """Schedule a coroutine on the actor's loop without waiting"""
        self.touch()
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_background_failure)
        return future

    def _log_background_failure(self, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background task failed in session {self.session_id}: {str(error)}")

    # --- Connection registry ---

    def add_server(self, name: str, url: str, transport_kind: TransportKind) -> Dict[str, Any]:
        summary = self.call(self.registry.add(name, url, transport_kind))
        add_log_entry(f"MCP server '{name}' {summary['state']}",
                      level="info" if summary['state'] != 'error' else "error")
        return summary

    def remove_server(self, name: str):
        self.call(self.registry.remove(name))
        add_log_entry(f"MCP server '{name}' removed")

    def describe(self) -> Dict[str, Any]:
        return self.call(self.registry.describe())

    def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return self.call(self._call_tool(server_id, tool_name, arguments))

    async def _call_tool(self, server_id, tool_name, arguments):
        connection = self.registry.resolve(server_id)
        schema = None
        try:
            for tool in await connection.list_tools():
                if tool['name'] == tool_name:
                    schema = tool['inputSchema']
                    break
        except Exception as e:
            logger.warning(f"Could not fetch input schema for {tool_name} on {server_id}: {str(e)}")
        return await self.invoker.call_tool(server_id, tool_name, arguments, schema)

    async def _connect_defaults(self):
        for server in config.DEFAULT_MCP_SERVERS:
            kind = TransportKind.from_server_type(server.get('type'), server['url'])
            summary = await self.registry.add(server['name'], server['url'], kind)
            logger.info(f"Default MCP server {server['name']}: {summary['state']}")

    # --- Query sessions ---

    async def _open_query_session(self, query: str) -> QuerySession:
        session = QuerySession(session_id=f"query_{uuid.uuid4().hex}", query=query)
        self.query_sessions[session.session_id] = session
        return session

    def _schedule_cleanup(self, query_session_id: str):
        handle = self.loop.call_later(
            config.QUERY_SESSION_GRACE_PERIOD, self._cleanup_query_session, query_session_id,
        )
        self._cleanup_handles[query_session_id] = handle

    def _cleanup_query_session(self, query_session_id: str):
        self._cleanup_handles.pop(query_session_id, None)
        self.query_sessions.pop(query_session_id, None)
        self.emitter.detach(query_session_id)
        logger.debug(f"Cleaned up query session {query_session_id}")

    def run_query(self, query: str, api_key: str) -> Dict[str, Any]:
        """Run the whole pipeline synchronously and return the result body"""
        async def _run():
            session = await self._open_query_session(query)
            try:
                return await self.orchestrator.run_query(session, api_key)
            finally:
                self._schedule_cleanup(session.session_id)

        return self.call(_run())

    def start_query_with_events(self, query: str, api_key: str, scope: Optional[str] = None,
                                proposal_id: Any = None, proposal_title: Optional[str] = None,
                                sink=None) -> str:
        """
        Start a streamed run in the background and return its query session id

        Args:
            scope: 'proposal' for per-proposal forum sentiment; with no query
                and no scope the run is an ecosystem sentiment analysis
            sink: optional sink attached before the run starts, for callers
                that stream the events in the same response
        """
        session = self.call(self._open_query_session(query))
        if sink is not None:
            self.attach_sink(session.session_id, sink)
        self.submit(self._run_with_events(session, api_key, scope, proposal_id, proposal_title))
        return session.session_id

    async def _run_with_events(self, session, api_key, scope, proposal_id, proposal_title):
        try:
            if scope == SCOPE_PROPOSAL:
                await self.orchestrator.run_proposal_sentiment(session, api_key, proposal_id,
                                                               proposal_title or session.query)
            elif scope == SCOPE_ECOSYSTEM or (not scope and not session.query):
                await self.orchestrator.run_ecosystem_sentiment(session, api_key)
            else:
                await self.orchestrator.run_query_with_events(session, api_key)
        finally:
            self._schedule_cleanup(session.session_id)

    def attach_sink(self, query_session_id: str, sink):
        self.touch()
        self.loop.call_soon_threadsafe(self.emitter.attach, query_session_id, sink)

    def detach_sink(self, query_session_id: str, sink):
        if self.closed or self.loop.is_closed():
            sink.close()
            return
        self.loop.call_soon_threadsafe(self.emitter.detach, query_session_id, sink)

    # --- Teardown ---

    async def _teardown(self):
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
        self.query_sessions.clear()
        self.emitter.close_all()
        await self.registry.close_all()

    def shutdown(self, timeout: float = 10):
        """Close every upstream connection and open stream, then stop the loop"""
        if self.closed:
            return
        try:
            self.call(self._teardown(), timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.warning(f"Timed out tearing down MCP session {self.session_id}")
        finally:
            self.closed = True
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)
            if not self._thread.is_alive():
                self.loop.close()
        logger.info(f"Shut down MCP session actor: {self.session_id}")


class MCPSessionManager:
    """
    Creates session actors on first use and evicts idle ones
    """

    def __init__(self, idle_timeout: Optional[float] = None,
                 actor_factory: Optional[Callable[[str], SessionActor]] = None):
        self.session_timeout = idle_timeout or config.SESSION_IDLE_TIMEOUT
        self._actor_factory = actor_factory or SessionActor
        self._actors: Dict[str, SessionActor] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._actors)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._actors

    def get_or_create(self, session_id: str) -> SessionActor:
        expired = []
        with self._lock:
            now = time.time()
            for sid, actor in list(self._actors.items()):
                if sid != session_id and actor.is_idle(self.session_timeout, now):
                    expired.append(self._actors.pop(sid))

            actor = self._actors.get(session_id)
            if actor is None:
                actor = self._actor_factory(session_id)
                self._actors[session_id] = actor
            actor.touch()

        for stale in expired:
            logger.info(f"Evicting idle MCP session: {stale.session_id}")
            stale.shutdown()
        return actor

    def get(self, session_id: str) -> Optional[SessionActor]:
        with self._lock:
            return self._actors.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            actor = self._actors.pop(session_id, None)
        if actor is None:
            return False
        actor.shutdown()
        return True

    def cleanup_expired_sessions(self) -> int:
        with self._lock:
            now = time.time()
            expired = [sid for sid, actor in self._actors.items() if actor.is_idle(self.session_timeout, now)]
            actors = [self._actors.pop(sid) for sid in expired]
        for actor in actors:
            actor.shutdown()
        if actors:
            logger.info(f"Cleaned up {len(actors)} idle MCP sessions")
        return len(actors)

    def shutdown(self):
        with self._lock:
            actors = list(self._actors.values())
            self._actors.clear()
        for actor in actors:
            actor.shutdown()
