import concurrent.futures
import datetime
import logging
import queue
import time

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from gov_assistant import config
from gov_assistant.auth import api_token_required, resolve_llm_api_key
from gov_assistant.errors import (
    ConnectionNotReadyError,
    InvalidAPIKeyError,
    MCPConnectionError,
    ServerNotFoundError,
    ToolInvocationError,
    ValidationError,
)
from gov_assistant.events import KEEPALIVE_COMMENT, QueueEventSink, connection_established, format_sse
from gov_assistant.logging_utils import add_log_entry, live_log
from gov_assistant.mcp_client.connection import TransportKind

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__)

AGENT_PREFIX = '/agents/<agent>/<session_id>'


def _sessions():
    return current_app.extensions['mcp_sessions']


def _actor(session_id):
    return _sessions().get_or_create(session_id)


def _json_body():
    return request.get_json(silent=True) or {}


def _error_response(e):
    """Map the exception taxonomy onto HTTP status codes"""
    if isinstance(e, InvalidAPIKeyError):
        return jsonify({"error": str(e)}), e.status_code
    if isinstance(e, ValidationError):
        return jsonify({"error": str(e)}), 400
    if isinstance(e, ServerNotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ConnectionNotReadyError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, ToolInvocationError):
        return jsonify({"error": str(e)}), 400
    if isinstance(e, concurrent.futures.TimeoutError):
        return jsonify({"error": "Upstream request timed out"}), 504
    if isinstance(e, MCPConnectionError):
        return jsonify({"error": str(e)}), 500
    logger.error(f"Unhandled error in {request.path}: {str(e)}")
    return jsonify({"error": f"Internal server error: {str(e)}"}), 500


def _event_stream(actor, query_session_id, sink):
    """
    Generator backing a text/event-stream response

    Emits CONNECTION_ESTABLISHED, then whatever the pipeline sends, with a
    keep-alive comment whenever the stream has been idle. Ends when the sink
    is closed or the maximum stream lifetime is reached; the sink is always
    detached on the way out, including on client disconnect.
    """
    started = time.time()
    try:
        yield format_sse(connection_established(query_session_id))
        while True:
            remaining = config.SSE_MAX_STREAM_LIFETIME - (time.time() - started)
            if remaining <= 0:
                logger.info(f"Event stream for {query_session_id} reached its maximum lifetime")
                break
            try:
                event = sink.get(timeout=min(config.SSE_KEEPALIVE_INTERVAL, remaining))
            except queue.Empty:
                yield KEEPALIVE_COMMENT
                continue
            if event is None:
                break
            yield format_sse(event)
    finally:
        actor.detach_sink(query_session_id, sink)


def _sse_response(generator):
    return Response(
        stream_with_context(generator),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )


def _wants_event_stream():
    accepted = [mimetype for mimetype, _ in request.accept_mimetypes]
    return bool(accepted) and all(mimetype == 'text/event-stream' for mimetype in accepted)


@api_bp.route('/health', methods=['GET'])
@api_bp.route(f'{AGENT_PREFIX}/health', methods=['GET'])
def health(agent=None, session_id=None):
    """
    Health check
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is up
        schema:
          type: object
          properties:
            status:
              type: string
              example: ok
            timestamp:
              type: string
    """
    return jsonify({
        "status": "ok",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    })


@api_bp.route('/api/logs', methods=['GET'])
@api_token_required
def get_logs():
    """
    Get live logs
    ---
    tags:
      - Logs
    responses:
      200:
        description: List of live log entries
        schema:
          type: array
          items:
            type: object
    """
    return jsonify(list(live_log))


def _add_server(session_id, default_type):
    data = _json_body()
    for field in ('name', 'url'):
        if not data.get(field):
            return jsonify({"error": f"Missing required field: {field}"}), 400
    try:
        kind = TransportKind.from_server_type(data.get('type') or default_type, data['url'])
        summary = _actor(session_id).add_server(data['name'], data['url'], kind)
        return jsonify({"success": summary['state'] != 'error', "server": summary})
    except Exception as e:
        return _error_response(e)


@api_bp.route(f'{AGENT_PREFIX}/add-mcp', methods=['POST'])
@api_token_required
def add_mcp(agent, session_id):
    """
    Connect an upstream MCP server to the session
    ---
    tags:
      - MCP Servers
    parameters:
      - name: agent
        in: path
        type: string
        required: true
      - name: session_id
        in: path
        type: string
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - name
            - url
          properties:
            name:
              type: string
              description: Logical server name, unique within the session
            url:
              type: string
              description: Upstream MCP endpoint
            type:
              type: string
              enum: ['bitte-proxy', 'direct']
              default: 'bitte-proxy'
              description: bitte-proxy uses streamable HTTP, direct uses SSE
    responses:
      200:
        description: Server registered; state is ready or error
      400:
        description: Missing name or url, or unknown type
    """
    return _add_server(session_id, 'bitte-proxy')


@api_bp.route(f'{AGENT_PREFIX}/add-discourse', methods=['POST'])
@api_token_required
def add_discourse(agent, session_id):
    """
    Connect a Discourse forum MCP server (SSE by default)
    ---
    tags:
      - MCP Servers
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - name
            - url
          properties:
            name:
              type: string
            url:
              type: string
            type:
              type: string
              default: 'direct'
    responses:
      200:
        description: Server registered; state is ready or error
      400:
        description: Missing name or url
    """
    return _add_server(session_id, 'direct')


@api_bp.route(f'{AGENT_PREFIX}/remove-mcp', methods=['POST'])
@api_token_required
def remove_mcp(agent, session_id):
    """
    Disconnect and forget an upstream MCP server
    ---
    tags:
      - MCP Servers
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - serverId
          properties:
            serverId:
              type: string
    responses:
      200:
        description: Server removed
      404:
        description: No server with that name in this session
    """
    server_id = _json_body().get('serverId')
    if not server_id:
        return jsonify({"error": "Missing required field: serverId"}), 400
    try:
        _actor(session_id).remove_server(server_id)
        return jsonify({"success": True, "serverId": server_id})
    except Exception as e:
        return _error_response(e)


@api_bp.route(f'{AGENT_PREFIX}/mcp-state', methods=['GET'])
@api_token_required
def mcp_state(agent, session_id):
    """
    Snapshot of every server, tool, prompt and resource in the session
    ---
    tags:
      - MCP Servers
    responses:
      200:
        description: Aggregated state
        schema:
          type: object
          properties:
            tools:
              type: array
              items:
                type: object
            servers:
              type: object
            prompts:
              type: array
              items:
                type: object
            resources:
              type: array
              items:
                type: object
    """
    try:
        return jsonify(_actor(session_id).describe())
    except Exception as e:
        return _error_response(e)


@api_bp.route(f'{AGENT_PREFIX}/call-tool', methods=['POST'])
@api_token_required
def call_tool(agent, session_id):
    """
    Invoke a tool directly and return the raw MCP result
    ---
    tags:
      - Tools
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - toolName
            - serverId
          properties:
            toolName:
              type: string
            serverId:
              type: string
            args:
              type: object
    responses:
      200:
        description: Raw tool result
      400:
        description: Missing fields or arguments rejected by the tool's input schema
      404:
        description: Unknown server
      409:
        description: Server is not ready
      500:
        description: Upstream error
    """
    data = _json_body()
    for field in ('toolName', 'serverId'):
        if not data.get(field):
            return jsonify({"error": f"Missing required field: {field}"}), 400
    arguments = data.get('args') or {}
    if not isinstance(arguments, dict):
        return jsonify({"error": "args must be an object"}), 400
    try:
        result = _actor(session_id).call_tool(data['serverId'], data['toolName'], arguments)
        return jsonify(result)
    except Exception as e:
        return _error_response(e)


@api_bp.route(f'{AGENT_PREFIX}/query', methods=['POST'])
@api_token_required
def query(agent, session_id):
    """
    Run a governance question synchronously
    ---
    tags:
      - Query
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required:
            - query
          properties:
            query:
              type: string
            llmApiKey:
              type: string
              description: Anthropic API key (claudeApiKey or the x-api-key header also work)
    responses:
      200:
        description: Pipeline result
        schema:
          type: object
          properties:
            message:
              type: string
            proposals:
              type: array
              items:
                type: object
            discussions:
              type: array
              items:
                type: object
            crossReferences:
              type: array
              items:
                type: object
            confidence:
              type: number
            explanation:
              type: string
            analysis:
              type: string
      400:
        description: Missing query or API key
      401:
        description: Malformed API key
    """
    data = _json_body()
    try:
        api_key = resolve_llm_api_key(data, request.headers)
        text = (data.get('query') or '').strip()
        if not text:
            raise ValidationError("Missing required field: query")
        return jsonify(_actor(session_id).run_query(text, api_key))
    except Exception as e:
        return _error_response(e)


@api_bp.route(f'{AGENT_PREFIX}/query-with-events', methods=['POST'])
@api_token_required
def query_with_events(agent, session_id):
    """
    Start a governance question in the background and stream its events
    ---
    tags:
      - Query
    description: >
      Returns the query session id immediately; open `events?session=<id>` to
      receive the run. When the request only accepts text/event-stream the
      events are streamed in this response instead. With scope "proposal" the
      run analyses forum sentiment for one proposal; with no query and no
      scope it analyses the whole governance forum.
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            query:
              type: string
            llmApiKey:
              type: string
            scope:
              type: string
              enum: ['proposal', 'ecosystem']
            proposalId:
              type: string
            proposalTitle:
              type: string
    responses:
      200:
        description: Query session started
        schema:
          type: object
          properties:
            sessionId:
              type: string
      400:
        description: Missing API key or proposal details
      401:
        description: Malformed API key
    """
    data = _json_body()
    try:
        api_key = resolve_llm_api_key(data, request.headers)
        scope = data.get('scope')
        if scope == 'proposal' and not (data.get('proposalId') is not None and data.get('proposalTitle')):
            raise ValidationError("proposalId and proposalTitle are required for proposal scope")

        actor = _actor(session_id)
        sink = QueueEventSink() if _wants_event_stream() else None
        query_session_id = actor.start_query_with_events(
            (data.get('query') or '').strip(), api_key,
            scope=scope,
            proposal_id=data.get('proposalId'),
            proposal_title=data.get('proposalTitle'),
            sink=sink,
        )
    except Exception as e:
        return _error_response(e)

    add_log_entry(f"Query session {query_session_id} started for {session_id}")
    if sink is not None:
        return _sse_response(_event_stream(actor, query_session_id, sink))
    return jsonify({"sessionId": query_session_id})


@api_bp.route(f'{AGENT_PREFIX}/events', methods=['GET'])
@api_bp.route(f'{AGENT_PREFIX}/query-with-events', methods=['GET'])
@api_token_required
def events(agent, session_id):
    """
    Attach to a query session's event stream
    ---
    tags:
      - Query
    parameters:
      - name: session
        in: query
        type: string
        required: true
        description: Query session id returned by query-with-events
    produces:
      - text/event-stream
    responses:
      200:
        description: Server-Sent Events stream
      400:
        description: Missing session parameter
    """
    query_session_id = request.args.get('session')
    if not query_session_id:
        return jsonify({"error": "Missing required query parameter: session"}), 400
    actor = _actor(session_id)
    sink = QueueEventSink()
    actor.attach_sink(query_session_id, sink)
    return _sse_response(_event_stream(actor, query_session_id, sink))
