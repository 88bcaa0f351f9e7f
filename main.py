import atexit
import os
import logging
import time
from flask import Flask, g, request
from dotenv import load_dotenv
from flasgger import Swagger

# Load environment variables from .env file
load_dotenv()

# --- App Imports ---
from gov_assistant import config
from gov_assistant.api_routes import api_bp
from gov_assistant.logging_utils import log_request, log_response
from gov_assistant.mcp_sessions import MCPSessionManager

REQUIRED_CORS_HEADERS = ['Content-Type', 'Authorization', 'Mcp-Session-Id', 'Mcp-Protocol-Version', 'X-Api-Key']


def configure_logging(level=None):
    """Configure root logging from LOG_LEVEL"""
    level_name = (level or config.LOG_LEVEL or 'INFO').upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO),
                        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')


# --- Logging Configuration ---
configure_logging()

# --- Flask App Initialization ---
app = Flask(__name__)
app.secret_key = config.SECRET_KEY

# --- Swagger Configuration ---
swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": 'apispec',
            "route": '/apispec.json',
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/swagger/"
}

swagger_template = {
    "swagger": "2.0",
    "info": {
        "title": "Governance Assistant Gateway",
        "description": "Per-session MCP connection registry and governance query pipeline. "
                       "When API_BEARER_TOKEN is set, send it as `Authorization: Bearer <token>`.",
        "version": "1.0.0"
    },
    "basePath": "/",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "BearerAuth": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": "Bearer token, only required when API_BEARER_TOKEN is configured."
        }
    },
    "security": [
        {
            "BearerAuth": []
        }
    ]
}

swagger = Swagger(app, config=swagger_config, template=swagger_template)

# --- Register Blueprints ---
app.register_blueprint(api_bp)

# --- Session actors live for the process lifetime ---
session_manager = MCPSessionManager()
app.extensions['mcp_sessions'] = session_manager
atexit.register(session_manager.shutdown)


# --- Request logging and CORS ---
@app.before_request
def before_request():
    g.request_started = time.time()
    if request.method == 'OPTIONS':
        return '', 204
    if request.path.startswith(('/swagger', '/flasgger_static', '/apispec')):
        return None
    session_id = (request.view_args or {}).get('session_id')
    log_request(request.method, request.path, dict(request.headers),
                request.get_json(silent=True), session_id=session_id)
    return None


@app.after_request
def after_request(response):
    requested = request.headers.get('Access-Control-Request-Headers', '')
    allow_headers = [h.strip() for h in requested.split(',') if h.strip()]
    for header in REQUIRED_CORS_HEADERS:
        if header.lower() not in (h.lower() for h in allow_headers):
            allow_headers.append(header)

    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = ', '.join(allow_headers)
    response.headers['Access-Control-Expose-Headers'] = 'Mcp-Session-Id'

    if request.method != 'OPTIONS' and not request.path.startswith(('/swagger', '/flasgger_static', '/apispec')):
        latency_ms = int((time.time() - g.get('request_started', time.time())) * 1000)
        body = None if response.is_streamed else response.get_data(as_text=True)
        log_response(response.status_code, dict(response.headers), body, latency_ms=latency_ms)
    return response


# --- Main Execution ---
if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=False, threaded=True)
