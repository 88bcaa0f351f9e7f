import json

import pytest

from main import app as flask_app
from gov_assistant.errors import MCPConnectionError, SinkClosedError
from gov_assistant.mcp_client.connection import ConnectionState


def text_result(payload):
    """Wrap a JSON payload the way MCP servers return tool output"""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return {'content': [{'type': 'text', 'text': text}], 'isError': False}


class FakeConnection:
    """In-process stand-in for MCPConnection"""

    def __init__(self, name, url, transport_kind, tools=None, responses=None,
                 fail_connect=None, fail_listing=None):
        self.name = name
        self.url = url
        self.transport_kind = transport_kind
        self.state = ConnectionState.CONNECTING
        self.last_error = None
        self.tools = tools or []
        self.responses = responses or {}
        self.fail_connect = fail_connect
        self.fail_listing = fail_listing
        self.calls = []
        self.closed = False

    async def connect(self):
        if self.fail_connect:
            self.state = ConnectionState.ERROR
            self.last_error = self.fail_connect
            raise MCPConnectionError(self.fail_connect)
        self.state = ConnectionState.READY

    async def list_tools(self):
        if self.fail_listing:
            raise RuntimeError(self.fail_listing)
        return [{'name': t['name'], 'description': t.get('description'),
                 'inputSchema': t.get('inputSchema', {}), 'serverId': self.name} for t in self.tools]

    async def list_prompts(self):
        return []

    async def list_resources(self):
        return []

    async def call_tool(self, tool_name, arguments):
        self.calls.append((tool_name, arguments))
        response = self.responses.get(tool_name)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return {'content': [{'type': 'text', 'text': f'Unknown tool {tool_name}'}], 'isError': True}
        return response

    async def close(self):
        self.closed = True

    def summary(self):
        return {
            'name': self.name,
            'url': self.url,
            'type': getattr(self.transport_kind, 'value', self.transport_kind),
            'state': self.state.value,
            'error': self.last_error,
        }


class ListSink:
    """Sink that records events and can be closed"""

    def __init__(self):
        self.events = []
        self.closed = False

    def send(self, event):
        if self.closed:
            raise SinkClosedError("closed")
        self.events.append(event)

    def close(self):
        self.closed = True

    def types(self):
        return [event['type'] for event in self.events]


FORUM_TOOLS = [
    {'name': 'get_latest_topics', 'inputSchema': {'type': 'object', 'properties': {'limit': {'type': 'integer'}}}},
    {'name': 'search_posts', 'inputSchema': {
        'type': 'object', 'properties': {'query': {'type': 'string'}}, 'required': ['query']}},
]

PROPOSAL_TOOLS = [
    {'name': 'get_proposals', 'inputSchema': {'type': 'object', 'properties': {'limit': {'type': 'integer'}}}},
    {'name': 'get_proposal', 'inputSchema': {
        'type': 'object', 'properties': {'proposal_id': {'type': 'integer'}}, 'required': ['proposal_id']}},
]

PROPOSALS = [
    {'id': 1, 'title': 'Treasury Budget', 'status': 'Voting', 'votes_for': 12, 'votes_against': 3},
    {'id': 2, 'title': 'Validator Rewards', 'status': 'Approved'},
]

TOPICS = [
    {'id': 10, 'title': 'Discussion', 'excerpt': 'thoughts on Treasury Budget proposal', 'posts_count': 4},
    {'id': 11, 'title': 'Community call notes', 'excerpt': 'agenda for next week'},
]


def governance_connection_factory(overrides=None):
    """Connection factory producing a fake forum and a fake proposal registry"""
    overrides = overrides or {}

    def factory(name, url, transport_kind):
        if name in overrides:
            return FakeConnection(name, url, transport_kind, **overrides[name])
        lowered = name.lower()
        if 'discourse' in lowered or 'forum' in lowered:
            return FakeConnection(name, url, transport_kind, tools=FORUM_TOOLS, responses={
                'get_latest_topics': text_result({'topics': TOPICS}),
                'search_posts': text_result({'posts': [TOPICS[0]]}),
            })
        return FakeConnection(name, url, transport_kind, tools=PROPOSAL_TOOLS, responses={
            'get_proposals': text_result({'proposals': PROPOSALS}),
            'get_proposal': text_result({'proposal': PROPOSALS[1]}),
        })

    return factory


class FakeLLMClient:
    """Returns canned completions in order and records the prompts it saw"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts = []

    async def complete(self, system, prompt, max_tokens=None):
        self.prompts.append(prompt)
        if not self.responses:
            return '{}'
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


@pytest.fixture
def app():
    """Flask app fixture."""
    return flask_app


@pytest.fixture
def client(app):
    """Test client fixture."""
    return app.test_client()


@pytest.fixture(autouse=True)
def no_bearer_token(monkeypatch):
    """Run every test without the optional API bearer token."""
    monkeypatch.setattr('gov_assistant.config.API_BEARER_TOKEN', None)
    monkeypatch.setattr('gov_assistant.config.AUTO_CONNECT_DEFAULTS', False)
    monkeypatch.setattr('gov_assistant.config.DEFAULT_LLM_API_KEY', None)
