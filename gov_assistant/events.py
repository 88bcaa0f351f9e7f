"""
Session Event Emitter

Pipeline lifecycle events are pushed to at most one output sink per query
session. Sinks attach whenever the browser opens its event stream, which may
be before or after the pipeline starts; events emitted while no sink is
attached are dropped.
"""

import asyncio
import json
import logging
import queue
import re
import time
import uuid
from typing import Any, Dict, Optional

from gov_assistant import config
from gov_assistant.errors import SinkClosedError

logger = logging.getLogger(__name__)

KEEPALIVE_COMMENT = ": ping\n\n"
TEXT_CHUNK_SIZE = 40


class EventType:
    CONNECTION_ESTABLISHED = 'CONNECTION_ESTABLISHED'
    RUN_STARTED = 'RUN_STARTED'
    RUN_FINISHED = 'RUN_FINISHED'
    RUN_ERROR = 'RUN_ERROR'
    STEP_STARTED = 'STEP_STARTED'
    STEP_FINISHED = 'STEP_FINISHED'
    TOOL_CALL_START = 'TOOL_CALL_START'
    TOOL_CALL_END = 'TOOL_CALL_END'
    TOOL_CALL_RESULT = 'TOOL_CALL_RESULT'
    TEXT_MESSAGE_START = 'TEXT_MESSAGE_START'
    TEXT_MESSAGE_CONTENT = 'TEXT_MESSAGE_CONTENT'
    TEXT_MESSAGE_END = 'TEXT_MESSAGE_END'
    CUSTOM = 'CUSTOM'


def make_event(event_type: str, **fields) -> Dict[str, Any]:
    event = {'type': event_type, 'timestamp': int(time.time() * 1000)}
    event.update(fields)
    return event


def connection_established(session_id):
    return make_event(EventType.CONNECTION_ESTABLISHED, sessionId=session_id)


def run_started(thread_id, run_id):
    return make_event(EventType.RUN_STARTED, threadId=thread_id, runId=run_id)


def run_finished(thread_id, run_id, result):
    return make_event(EventType.RUN_FINISHED, threadId=thread_id, runId=run_id, result=result)


def run_error(message):
    return make_event(EventType.RUN_ERROR, message=message)


def step_started(step_name):
    return make_event(EventType.STEP_STARTED, stepName=step_name)


def step_finished(step_name):
    return make_event(EventType.STEP_FINISHED, stepName=step_name)


def tool_call_start(call_id, tool_name, server_id):
    return make_event(EventType.TOOL_CALL_START, toolCallId=call_id, toolName=tool_name, serverId=server_id)


def tool_call_end(call_id, tool_name, server_id):
    return make_event(EventType.TOOL_CALL_END, toolCallId=call_id, toolName=tool_name, serverId=server_id)


def tool_call_result(call_id, tool_name, success, error=None):
    event = make_event(EventType.TOOL_CALL_RESULT, toolCallId=call_id, toolName=tool_name, success=success)
    if error:
        event['error'] = error
    return event


def custom(name, value):
    return make_event(EventType.CUSTOM, name=name, value=value)


def format_sse(event: Dict[str, Any]) -> str:
    """Serialize one event as a Server-Sent Events `data:` frame"""
    return f"data: {json.dumps(event, default=str)}\n\n"


class QueueEventSink:
    """
    Thread-safe sink bridging a session's event loop and a Flask streaming response

    The producer side calls `send` from the session loop; the response
    generator blocks on `get` in its request thread. `close` wakes the reader
    with a `None` sentinel.
    """

    def __init__(self):
        self._queue = queue.Queue()
        self.closed = False

    def send(self, event: Dict[str, Any]):
        if self.closed:
            raise SinkClosedError("Event stream has been closed")
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next event, or None once closed. Raises queue.Empty on timeout."""
        return self._queue.get(timeout=timeout)

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put(None)


class SessionEventEmitter:
    """
    Maps query session ids to their single attached sink

    Not thread-safe; owned by one session actor's event loop.
    """

    def __init__(self):
        self._sinks: Dict[str, Any] = {}

    def has_sink(self, session_id: str) -> bool:
        return session_id in self._sinks

    def attach(self, session_id: str, sink):
        previous = self._sinks.get(session_id)
        self._sinks[session_id] = sink
        if previous is not None and previous is not sink:
            logger.info(f"Replacing event sink for session {session_id}")
            previous.close()
        logger.debug(f"Event sink attached for session {session_id}")

    def detach(self, session_id: str, sink=None):
        """
        Close and remove the session's sink

        When `sink` is given only that sink is detached, so a stream that was
        already replaced cannot evict its successor.
        """
        current = self._sinks.get(session_id)
        if sink is not None and current is not sink:
            sink.close()
            return
        if current is not None:
            del self._sinks[session_id]
            current.close()
            logger.debug(f"Event sink detached for session {session_id}")

    def close_all(self):
        sinks = list(self._sinks.values())
        self._sinks.clear()
        for sink in sinks:
            sink.close()

    def emit(self, session_id: str, event: Dict[str, Any]) -> bool:
        """
        Send an event to the session's sink

        Returns:
            True if delivered, False if dropped (no sink or sink closed)
        """
        sink = self._sinks.get(session_id)
        if sink is None:
            return False
        try:
            sink.send(event)
            return True
        except SinkClosedError as e:
            logger.warning(f"Evicting closed event sink for session {session_id}: {str(e)}")
            self._sinks.pop(session_id, None)
            return False

    async def wait_for_sink(self, session_id: str, attempts: int = None, interval: float = None) -> bool:
        """Poll for an attached sink; False once the attempts run out"""
        attempts = config.SINK_WAIT_ATTEMPTS if attempts is None else attempts
        interval = config.SINK_WAIT_INTERVAL if interval is None else interval
        for _ in range(attempts):
            if session_id in self._sinks:
                return True
            await asyncio.sleep(interval)
        if session_id in self._sinks:
            return True
        logger.warning(f"No event stream attached for session {session_id} after {attempts} attempts, "
                       f"continuing without streaming")
        return False


def chunk_text(text: str, size: int = TEXT_CHUNK_SIZE):
    """Split text on word boundaries into deltas that concatenate back to the input"""
    chunk = ''
    for token in re.findall(r'\S+\s*|\s+', text or ''):
        chunk += token
        if len(chunk) >= size:
            yield chunk
            chunk = ''
    if chunk:
        yield chunk


class TextMessageStream:
    """
    One assistant message streamed as START, CONTENT*, END

    Usable as a context manager so the END event is sent even when the body
    raises.
    """

    def __init__(self, emitter: SessionEventEmitter, session_id: str,
                 message_id: Optional[str] = None, role: str = 'assistant'):
        self.emitter = emitter
        self.session_id = session_id
        self.message_id = message_id or f"msg_{uuid.uuid4().hex[:12]}"
        self.role = role
        self.started = False
        self.ended = False

    def start(self):
        if not self.started:
            self.started = True
            self.emitter.emit(self.session_id, make_event(
                EventType.TEXT_MESSAGE_START, messageId=self.message_id, role=self.role))

    def write(self, delta: str):
        if self.ended:
            raise RuntimeError(f"Message {self.message_id} has already ended")
        if not delta:
            return
        self.start()
        self.emitter.emit(self.session_id, make_event(
            EventType.TEXT_MESSAGE_CONTENT, messageId=self.message_id, delta=delta))

    def write_text(self, text: str, size: int = TEXT_CHUNK_SIZE):
        for delta in chunk_text(text, size):
            self.write(delta)

    def end(self):
        if self.ended:
            return
        self.start()
        self.ended = True
        self.emitter.emit(self.session_id, make_event(EventType.TEXT_MESSAGE_END, messageId=self.message_id))

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.end()
        return False
