"""
MCP Query Planning

This module turns a free-text governance question into tool calls: it detects
which topics the question touches with a fixed keyword vocabulary, decides
which connected server plays the forum role and which plays the proposal
registry role, and picks tools and arguments from each server's listing.

The classifier is deliberately greedy: when in doubt it plans an extra call
rather than miss data.
"""

import logging
import re
from typing import Any, Dict, FrozenSet, List, Optional

from gov_assistant.llm_pipeline import extract_explicit_ids

from .tools import ToolInvocationPlan

logger = logging.getLogger(__name__)

ROLE_DISCUSSION = 'discussion'
ROLE_PROPOSAL = 'proposal'

DISCUSSION_SERVER_MARKERS = ('discourse', 'disco', 'forum')
PROPOSAL_SERVER_MARKERS = ('stake', 'bitte', 'proposal', 'hos')

# tools assumed when a server's tool listing is unavailable
DEFAULT_TOOLS = {
    ROLE_DISCUSSION: {'latest': 'get_latest_topics', 'search': 'search_posts'},
    ROLE_PROPOSAL: {'list': 'get_proposals', 'single': 'get_proposal'},
}

QUERY_PROPERTY_HINTS = ('query', 'search', 'term', 'keyword', 'q', 'text')
ID_PROPERTY_HINTS = ('proposal_id', 'proposalid', 'id')
LIMIT_PROPERTY_HINTS = ('limit', 'count', 'max_results', 'per_page', 'page_size')
DEFAULT_LIMIT = 10

STOPWORDS = {
    'the', 'a', 'an', 'of', 'on', 'in', 'for', 'to', 'and', 'or', 'is', 'are', 'what', 'show',
    'me', 'about', 'any', 'list', 'give', 'tell', 'please', 'which', 'there', 'with', 'all',
}


class MCPQueryPlanner:
    """
    Decides which upstream tools to call for a governance question
    """

    def __init__(self):
        self.intent_patterns = self._initialize_intent_patterns()

    def _initialize_intent_patterns(self) -> Dict[str, List[re.Pattern]]:
        """Initialize regex patterns for the governance vocabulary"""
        return {
            'validator': [re.compile(r'\bvalidators?\b', re.IGNORECASE)],
            'treasury': [re.compile(r'\b(treasury|budget|funding|grants?)\b', re.IGNORECASE)],
            'proposal': [re.compile(r'\bproposals?\b', re.IGNORECASE)],
            'vote': [re.compile(r'\b(votes?|voting|voted|ballot)\b', re.IGNORECASE)],
            'discussion': [
                re.compile(r'\b(discussions?|forum|topics?|posts?|threads?|discourse)\b', re.IGNORECASE),
            ],
            'recency': [re.compile(r'\b(latest|new|newest|recent|active|current|top|open)\b', re.IGNORECASE)],
            'sentiment': [re.compile(r'\b(sentiment|opinions?|feel|feedback|concerns?)\b', re.IGNORECASE)],
        }

    def detect_intents(self, query: str) -> List[str]:
        return [
            intent for intent, patterns in self.intent_patterns.items()
            if any(pattern.search(query) for pattern in patterns)
        ]

    @staticmethod
    def extract_proposal_ids(query: str) -> List[int]:
        return extract_explicit_ids(query)

    @staticmethod
    def extract_search_terms(query: str) -> str:
        words = re.findall(r'[A-Za-z0-9][\w-]*', query)
        return ' '.join(w for w in words if w.lower() not in STOPWORDS) or query.strip()

    @staticmethod
    def server_roles(server_name: str) -> FrozenSet[str]:
        """Every role the server name suggests; a name may carry both"""
        name = server_name.lower()
        roles = set()
        if any(marker in name for marker in DISCUSSION_SERVER_MARKERS):
            roles.add(ROLE_DISCUSSION)
        if any(marker in name for marker in PROPOSAL_SERVER_MARKERS):
            roles.add(ROLE_PROPOSAL)
        return frozenset(roles)

    def plan_tool_calls(self, query: str, registry_state: Dict[str, Any]) -> List[ToolInvocationPlan]:
        """
        Plan tool calls for a query against the registry's describe() snapshot

        Args:
            query: free-text user question
            registry_state: {'tools': [...], 'servers': {name: {state, ...}}}

        Returns:
            Ordered list of ToolInvocationPlan
        """
        intents = self.detect_intents(query)
        proposal_ids = self.extract_proposal_ids(query)
        search_terms = self.extract_search_terms(query)

        wants_proposals = bool({'proposal', 'vote', 'validator', 'treasury'} & set(intents)) or bool(proposal_ids)
        wants_discussions = bool({'discussion', 'sentiment'} & set(intents))
        if not wants_proposals and not wants_discussions:
            wants_proposals = wants_discussions = True
        # voting and treasury questions are argued about on the forum too
        if {'treasury', 'vote'} & set(intents):
            wants_discussions = True

        tools_by_server = self._group_tools(registry_state)

        plans: List[ToolInvocationPlan] = []
        for server_name, server in registry_state.get('servers', {}).items():
            if server.get('state') != 'ready':
                continue
            roles = self.server_roles(server_name)
            tools = tools_by_server.get(server_name, [])
            if ROLE_PROPOSAL in roles and wants_proposals:
                plans.extend(self._plan_proposal_calls(server_name, tools, intents, proposal_ids, search_terms))
            if ROLE_DISCUSSION in roles and wants_discussions:
                plans.extend(self._plan_discussion_calls(server_name, tools, intents, search_terms))

        logger.info(f"Planned {len(plans)} tool calls for intents {intents} (ids: {proposal_ids})")
        return plans

    def plan_forum_calls(self, registry_state: Dict[str, Any],
                         search_terms: Optional[str] = None) -> List[ToolInvocationPlan]:
        """
        Plan forum-only calls: a search for `search_terms`, or the latest
        topics when no terms are given
        """
        tools_by_server = self._group_tools(registry_state)

        plans = []
        for server_name, server in registry_state.get('servers', {}).items():
            if server.get('state') != 'ready' or ROLE_DISCUSSION not in self.server_roles(server_name):
                continue
            tools = tools_by_server.get(server_name, [])
            if search_terms:
                tool = self._find_tool(tools, ('search',))
                plans.append(self._make_plan(server_name, tool, DEFAULT_TOOLS[ROLE_DISCUSSION]['search'],
                                             search_terms, None, ROLE_DISCUSSION, "forum search"))
            else:
                tool = self._find_tool(tools, ('latest', 'topics', 'list_topic'))
                plans.append(self._make_plan(server_name, tool, DEFAULT_TOOLS[ROLE_DISCUSSION]['latest'],
                                             '', None, ROLE_DISCUSSION, "latest topics"))
        return plans

    def _plan_proposal_calls(self, server_name, tools, intents, proposal_ids, search_terms):
        plans = []
        if proposal_ids:
            single = self._find_tool(tools, ('get_proposal', 'proposal_by_id', 'proposal_details'), exclude=('proposals',))
            for proposal_id in proposal_ids:
                plans.append(self._make_plan(
                    server_name, single, DEFAULT_TOOLS[ROLE_PROPOSAL]['single'],
                    search_terms, proposal_id, ROLE_PROPOSAL, f"explicit proposal id {proposal_id}",
                ))

        topical = [intent for intent in ('validator', 'treasury', 'vote') if intent in intents]
        for intent in topical:
            tool = self._find_tool(tools, (intent,))
            if tool:
                plans.append(self._make_plan(server_name, tool, None, search_terms, None,
                                             ROLE_PROPOSAL, f"{intent} keyword"))

        if not proposal_ids or 'recency' in intents:
            listing = self._find_tool(tools, ('proposals', 'list_proposal', 'get_proposal'))
            plans.append(self._make_plan(server_name, listing, DEFAULT_TOOLS[ROLE_PROPOSAL]['list'],
                                         search_terms, None, ROLE_PROPOSAL, "proposal listing"))
        return [plan for plan in plans if plan is not None]

    def _plan_discussion_calls(self, server_name, tools, intents, search_terms):
        plans = []
        latest = self._find_tool(tools, ('latest', 'topics', 'list_topic'))
        plans.append(self._make_plan(server_name, latest, DEFAULT_TOOLS[ROLE_DISCUSSION]['latest'],
                                     search_terms, None, ROLE_DISCUSSION, "latest topics"))

        specific = set(intents) - {'recency', 'discussion'}
        if specific or 'recency' not in intents:
            search = self._find_tool(tools, ('search',))
            plans.append(self._make_plan(server_name, search, DEFAULT_TOOLS[ROLE_DISCUSSION]['search'],
                                         search_terms, None, ROLE_DISCUSSION, "forum search"))
        return [plan for plan in plans if plan is not None]

    @staticmethod
    def _group_tools(registry_state) -> Dict[str, List[Dict[str, Any]]]:
        tools_by_server: Dict[str, List[Dict[str, Any]]] = {}
        for tool in registry_state.get('tools', []):
            tools_by_server.setdefault(tool.get('serverId'), []).append(tool)
        return tools_by_server

    @staticmethod
    def _find_tool(tools, fragments, exclude=()):
        for fragment in fragments:
            for tool in tools:
                name = tool.get('name', '').lower()
                if fragment in name and not any(e in name for e in exclude):
                    return tool
        return None

    def _make_plan(self, server_name, tool, default_name, search_terms, proposal_id, role, reason):
        if tool is None and default_name is None:
            return None
        tool_name = tool['name'] if tool else default_name
        schema = tool.get('inputSchema') if tool else None
        arguments = self.build_arguments(schema, search_terms, proposal_id)
        if not schema and 'search' in tool_name and search_terms:
            arguments['query'] = search_terms
        return ToolInvocationPlan(
            server_id=server_name,
            tool_name=tool_name,
            arguments=arguments,
            role=role,
            reason=reason,
            input_schema=schema,
        )

    @staticmethod
    def build_arguments(schema: Optional[Dict[str, Any]], search_terms: str,
                        proposal_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Fill arguments from the tool's input schema

        Query-like properties get the search terms, id-like properties the
        explicit proposal id, limit-like properties a default page size.
        Without a schema only the obvious argument is guessed.
        """
        if not schema or not schema.get('properties'):
            if proposal_id is not None:
                return {'proposal_id': proposal_id}
            return {}

        arguments = {}
        for name, prop in schema['properties'].items():
            lowered = name.lower()
            prop_type = prop.get('type') if isinstance(prop, dict) else None
            if lowered in QUERY_PROPERTY_HINTS or any(h in lowered for h in ('query', 'search', 'term', 'keyword')):
                arguments[name] = search_terms
            elif proposal_id is not None and (lowered in ID_PROPERTY_HINTS or lowered.endswith('_id')):
                arguments[name] = str(proposal_id) if prop_type == 'string' else proposal_id
            elif lowered in LIMIT_PROPERTY_HINTS:
                arguments[name] = DEFAULT_LIMIT

        for name in schema.get('required', []):
            prop = schema['properties'].get(name, {})
            if name not in arguments and isinstance(prop, dict) and 'default' in prop:
                arguments[name] = prop['default']
        return arguments
