import json
import os


def _env_bool(name, default):
    return os.environ.get(name, str(default)).lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    try:
        return int(os.environ.get(name, default))
    except (ValueError, TypeError):
        return default


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except (ValueError, TypeError):
        return default


# --- Flask App Configuration ---
SECRET_KEY = os.urandom(24)
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

# --- Optional bearer token protecting the whole API ---
API_BEARER_TOKEN = os.environ.get('API_BEARER_TOKEN')

# --- LLM Configuration ---
ANTHROPIC_API_URL = os.environ.get('ANTHROPIC_API_URL', 'https://api.anthropic.com/v1/messages')
ANTHROPIC_MODEL = os.environ.get('ANTHROPIC_MODEL', 'claude-3-5-sonnet-latest')
ANTHROPIC_VERSION = os.environ.get('ANTHROPIC_VERSION', '2023-06-01')
LLM_API_KEY_PREFIX = os.environ.get('LLM_API_KEY_PREFIX', 'sk-ant-')
DEFAULT_LLM_API_KEY = os.environ.get('DEFAULT_LLM_API_KEY')
LLM_MAX_TOKENS = _env_int('LLM_MAX_TOKENS', 1024)
LLM_MAX_ATTEMPTS = _env_int('LLM_MAX_ATTEMPTS', 3)
LLM_INITIAL_BACKOFF = _env_float('LLM_INITIAL_BACKOFF', 1.0)
LLM_OVERLOADED_STATUSES = frozenset(
    int(code) for code in os.environ.get('LLM_OVERLOADED_STATUSES', '529').split(',') if code.strip()
)
LLM_TIMEOUT = _env_float('LLM_TIMEOUT', 60.0)

# --- Upstream MCP Configuration ---
MCP_CONNECT_TIMEOUT = _env_float('MCP_CONNECT_TIMEOUT', 30.0)
MCP_SSE_READ_TIMEOUT = _env_float('MCP_SSE_READ_TIMEOUT', 300.0)
MCP_TOOL_TIMEOUT = _env_float('MCP_TOOL_TIMEOUT', 60.0)

# --- Session / Event Stream Configuration ---
SINK_WAIT_ATTEMPTS = _env_int('SINK_WAIT_ATTEMPTS', 50)
SINK_WAIT_INTERVAL = _env_float('SINK_WAIT_INTERVAL', 0.1)
QUERY_SESSION_GRACE_PERIOD = _env_float('QUERY_SESSION_GRACE_PERIOD', 30.0)
SSE_MAX_STREAM_LIFETIME = _env_float('SSE_MAX_STREAM_LIFETIME', 300.0)
SSE_KEEPALIVE_INTERVAL = _env_float('SSE_KEEPALIVE_INTERVAL', 15.0)
SESSION_IDLE_TIMEOUT = _env_float('SESSION_IDLE_TIMEOUT', 3600.0)


def _pipeline_budget():
    """Worst case of one query run: two tool rounds and two LLM steps with every retry"""
    backoff = sum(LLM_INITIAL_BACKOFF * 2 ** i for i in range(max(LLM_MAX_ATTEMPTS - 1, 0)))
    llm_step = LLM_MAX_ATTEMPTS * LLM_TIMEOUT + backoff
    return 2 * llm_step + 2 * MCP_TOOL_TIMEOUT + MCP_CONNECT_TIMEOUT + SINK_WAIT_ATTEMPTS * SINK_WAIT_INTERVAL


# request threads wait this long on a session actor; outlasts a fully degraded run
ACTOR_CALL_TIMEOUT = _env_float('ACTOR_CALL_TIMEOUT', _pipeline_budget())

# --- Default upstream servers connected to every new session ---
AUTO_CONNECT_DEFAULTS = _env_bool('AUTO_CONNECT_DEFAULTS', False)
DEFAULT_MCP_SERVERS = json.loads(os.environ.get('DEFAULT_MCP_SERVERS', 'null') or 'null') or [
    {
        'name': 'NEAR Discourse',
        'url': 'https://disco.multidaomensional.workers.dev/sse',
        'type': 'direct',
    },
    {
        'name': 'House of Stake',
        'url': 'https://mcp.bitte.ai/mcp?agentId=hos-agent.vercel.app',
        'type': 'bitte-proxy',
    },
]
