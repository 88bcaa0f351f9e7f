import hmac
from functools import wraps

from flask import jsonify, request

from gov_assistant import config
from gov_assistant.errors import InvalidAPIKeyError


def api_token_required(f):
    """Require `Authorization: Bearer <API_BEARER_TOKEN>` when a token is configured"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = config.API_BEARER_TOKEN
        if not expected or request.method == 'OPTIONS':
            return f(*args, **kwargs)
        header = request.headers.get('Authorization', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not hmac.compare_digest(token.strip(), expected):
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated_function


def resolve_llm_api_key(body, headers):
    """
    Pick the caller's LLM API key from the request.

    Looks at the `llmApiKey` body field, its legacy `claudeApiKey` alias, the
    `x-api-key` header and finally the server-side default key.

    Raises:
        InvalidAPIKeyError: 400 when no key was supplied, 401 when the key
            does not look like a key for the configured provider
    """
    body = body or {}
    api_key = (body.get('llmApiKey') or body.get('claudeApiKey')
               or headers.get('x-api-key') or config.DEFAULT_LLM_API_KEY)
    if not api_key:
        raise InvalidAPIKeyError("LLM API key is required", status_code=400)
    api_key = api_key.strip()
    if config.LLM_API_KEY_PREFIX and not api_key.startswith(config.LLM_API_KEY_PREFIX):
        raise InvalidAPIKeyError(
            f'Invalid API key: expected a key starting with "{config.LLM_API_KEY_PREFIX}"',
            status_code=401,
        )
    return api_key
