"""
LLM Pipeline

Two sequential completions against the Anthropic Messages API: a filter step
that narrows the gathered proposals and discussions to the ones relevant to
the user's question, and an analyze step that answers the question from the
filtered facts. Both steps fail open. A transient "overloaded" status is
retried with exponential backoff; any other failure degrades to unfiltered
data or a null answer.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from gov_assistant import config
from gov_assistant.errors import LLMError, LLMOverloadedError, LLMRequestError
from gov_assistant.logging_utils import log_performance

logger = logging.getLogger(__name__)

PROMPT_TEXT_LIMIT = 300
SENTIMENT_LABELS = ('positive', 'negative', 'neutral', 'mixed')

FILTER_SYSTEM_PROMPT = (
    "You select governance records relevant to a user's question. "
    "Reply with a single JSON object and nothing else."
)
ANALYZE_SYSTEM_PROMPT = (
    "You are a governance assistant for the NEAR ecosystem. Answer strictly from the "
    "records provided. Reply with a single JSON object and nothing else."
)
SENTIMENT_SYSTEM_PROMPT = (
    "You assess community sentiment in governance forum discussions. "
    "Reply with a single JSON object and nothing else."
)


class AnthropicClient:
    """
    Minimal async client for the Anthropic Messages API

    `sleep` is the coroutine used between retries and can be swapped out to
    observe backoff delays without waiting.
    """

    def __init__(self, api_key: str, model: str = None, url: str = None,
                 max_attempts: int = None, initial_backoff: float = None,
                 overloaded_statuses=None, timeout: float = None, sleep=asyncio.sleep):
        self.api_key = api_key
        self.model = model or config.ANTHROPIC_MODEL
        self.url = url or config.ANTHROPIC_API_URL
        self.max_attempts = max_attempts or config.LLM_MAX_ATTEMPTS
        self.initial_backoff = config.LLM_INITIAL_BACKOFF if initial_backoff is None else initial_backoff
        self.overloaded_statuses = frozenset(overloaded_statuses or config.LLM_OVERLOADED_STATUSES)
        self.timeout = timeout or config.LLM_TIMEOUT
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {
            'x-api-key': self.api_key,
            'anthropic-version': config.ANTHROPIC_VERSION,
            'content-type': 'application/json',
        }

    async def _send(self, payload: Dict[str, Any]) -> Tuple[int, str]:
        """POST one request; returns (status, body text)"""
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, json=payload, headers=self._headers()) as resp:
                    return resp.status, await resp.text()
        except asyncio.TimeoutError:
            raise LLMError(f"LLM request timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise LLMError(f"LLM request to {self.url} failed: {e}")

    async def complete(self, system: str, prompt: str, max_tokens: int = None) -> str:
        """
        Run one completion and return the concatenated text blocks

        Raises:
            LLMOverloadedError: every attempt came back with an overloaded status
            LLMRequestError: any other non-2xx status (never retried)
            LLMError: transport failure or an unreadable response body
        """
        payload = {
            'model': self.model,
            'max_tokens': max_tokens or config.LLM_MAX_TOKENS,
            'system': system,
            'messages': [{'role': 'user', 'content': prompt}],
        }

        start_time = time.time()
        for attempt in range(1, self.max_attempts + 1):
            status, body = await self._send(payload)

            if 200 <= status < 300:
                log_performance("llm completion", int((time.time() - start_time) * 1000),
                                {'attempts': attempt, 'model': self.model})
                return self._read_text(body)

            if status not in self.overloaded_statuses:
                logger.error(f"LLM request failed with status {status}")
                raise LLMRequestError(status, body)

            if attempt == self.max_attempts:
                break
            delay = self.initial_backoff * (2 ** (attempt - 1))
            logger.warning(f"LLM overloaded (status {status}), retrying in {delay}s "
                           f"(attempt {attempt}/{self.max_attempts})")
            await self._sleep(delay)

        raise LLMOverloadedError(self.max_attempts)

    @staticmethod
    def _read_text(body: str) -> str:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise LLMError("LLM response body is not JSON")
        return ''.join(
            block.get('text', '')
            for block in data.get('content') or []
            if isinstance(block, dict) and block.get('type') == 'text'
        )


@dataclass
class DecodedLLMOutput:
    data: Optional[Dict[str, Any]]
    text: str
    strategy: str  # 'json', 'substring' or 'text'


def decode_llm_json(text: str) -> DecodedLLMOutput:
    """
    Decode a JSON object from model output

    Tries a strict parse of the whole text, then the first object that decodes
    from any `{` onward, then gives up and returns the text as-is with
    `data=None`.
    """
    text = (text or '').strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return DecodedLLMOutput(data, text, 'json')
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    start = text.find('{')
    while start != -1:
        try:
            data, _ = decoder.raw_decode(text, start)
            if isinstance(data, dict):
                return DecodedLLMOutput(data, text, 'substring')
        except json.JSONDecodeError:
            pass
        start = text.find('{', start + 1)

    logger.debug("No JSON object found in LLM output")
    return DecodedLLMOutput(None, text, 'text')


EXPLICIT_ID_PATTERN = re.compile(r"(?:\bproposals?\s*#?\s*|#)(\d+)\b", re.IGNORECASE)


def extract_explicit_ids(query: str) -> List[int]:
    """Explicit proposal ids such as "proposal 2", "proposal #2" or "#2", in order"""
    ids = []
    for match in EXPLICIT_ID_PATTERN.finditer(query or ""):
        value = int(match.group(1))
        if value not in ids:
            ids.append(value)
    return ids


def _proposal_brief(proposal):
    return {
        'id': proposal.get('id'),
        'title': proposal.get('title'),
        'status': proposal.get('status'),
        'proposer_id': proposal.get('proposer_id'),
        'votes_for': proposal.get('votes_for'),
        'votes_against': proposal.get('votes_against'),
        'voting_ends': proposal.get('voting_ends'),
        'description': str(proposal.get('description') or '')[:PROMPT_TEXT_LIMIT],
    }


def _discussion_brief(discussion):
    return {
        'id': discussion.get('id'),
        'title': discussion.get('title'),
        'posts_count': discussion.get('posts_count'),
        'last_activity': discussion.get('last_activity'),
        'excerpt': str(discussion.get('excerpt') or '')[:PROMPT_TEXT_LIMIT],
    }


@dataclass
class FilterOutcome:
    proposals: List[Dict[str, Any]]
    discussions: List[Dict[str, Any]]
    explanation: Optional[str] = None
    relevant_proposal_ids: List[Any] = field(default_factory=list)
    relevant_discussion_ids: List[Any] = field(default_factory=list)
    filtered: bool = False


def _select(entities, ids):
    wanted = {str(i) for i in ids}
    return [entity for entity in entities if str(entity.get('id')) in wanted]


def _keep_explicit(outcome, proposals, explicit_ids):
    if explicit_ids:
        outcome.proposals = _select(proposals, explicit_ids)
        outcome.relevant_proposal_ids = explicit_ids
    return outcome


def _build_filter_prompt(query, proposals, discussions, explicit_ids):
    rules = [
        "Return the ids of the proposals and discussions relevant to the question.",
        "For broad questions (latest, active, all) several records may be relevant.",
        "Otherwise choose by topic and by status.",
    ]
    if explicit_ids:
        rules.insert(0, f"The question names proposal ids {explicit_ids}. "
                        f"relevant_proposal_ids must be exactly {explicit_ids}.")
    return (
        f"Question: {query}\n\n"
        f"Proposals:\n{json.dumps([_proposal_brief(p) for p in proposals], default=str)}\n\n"
        f"Discussions:\n{json.dumps([_discussion_brief(d) for d in discussions], default=str)}\n\n"
        "Rules:\n- " + "\n- ".join(rules) + "\n\n"
        'Respond with {"relevant_proposal_ids": [...], "relevant_discussion_ids": [...], '
        '"explanation": "..."}'
    )


async def filter_relevant(client: AnthropicClient, query: str,
                          proposals: List[Dict[str, Any]],
                          discussions: List[Dict[str, Any]]) -> FilterOutcome:
    """
    Narrow the gathered records to those relevant to the query

    Ids named explicitly in the query ("proposal 2", "#2") select exactly those
    proposals whatever the model answers. Any LLM or decode failure returns
    the full, unfiltered sets.
    """
    explicit_ids = extract_explicit_ids(query)
    unfiltered = FilterOutcome(proposals=list(proposals), discussions=list(discussions))

    if not proposals and not discussions:
        return unfiltered

    try:
        text = await client.complete(FILTER_SYSTEM_PROMPT,
                                     _build_filter_prompt(query, proposals, discussions, explicit_ids))
    except LLMError as e:
        logger.warning(f"Relevance filter unavailable, using unfiltered data: {str(e)}")
        return _keep_explicit(unfiltered, proposals, explicit_ids)

    decoded = decode_llm_json(text)
    if decoded.data is None:
        logger.warning("Relevance filter returned no JSON, using unfiltered data")
        unfiltered.explanation = decoded.text or None
        return _keep_explicit(unfiltered, proposals, explicit_ids)

    data = decoded.data
    outcome = FilterOutcome(
        proposals=list(proposals),
        discussions=list(discussions),
        explanation=data.get('explanation'),
        filtered=True,
    )

    if explicit_ids:
        outcome.relevant_proposal_ids = explicit_ids
        outcome.proposals = _select(proposals, explicit_ids)
    elif isinstance(data.get('relevant_proposal_ids'), list):
        outcome.relevant_proposal_ids = data['relevant_proposal_ids']
        outcome.proposals = _select(proposals, outcome.relevant_proposal_ids)

    if isinstance(data.get('relevant_discussion_ids'), list):
        outcome.relevant_discussion_ids = data['relevant_discussion_ids']
        outcome.discussions = _select(discussions, outcome.relevant_discussion_ids)

    logger.info(f"Filter kept {len(outcome.proposals)}/{len(proposals)} proposals and "
                f"{len(outcome.discussions)}/{len(discussions)} discussions")
    return outcome


async def analyze(client: AnthropicClient, query: str,
                  proposals: List[Dict[str, Any]],
                  discussions: List[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """
    Answer the query from the filtered records

    Returns:
        {'answer': str|None, 'analysis': str|None}; both None on any failure
    """
    prompt = (
        f"Question: {query}\n\n"
        f"Proposals:\n{json.dumps([_proposal_brief(p) for p in proposals], default=str)}\n\n"
        f"Discussions:\n{json.dumps([_discussion_brief(d) for d in discussions], default=str)}\n\n"
        "If the question asks for a specific fact, put the direct answer in \"answer\" "
        "(for example the status or vote count of the named proposal). Put a short summary "
        "of the relevant records in \"analysis\". Use null when there is nothing to say.\n"
        'Respond with {"answer": ..., "analysis": ...}'
    )
    try:
        text = await client.complete(ANALYZE_SYSTEM_PROMPT, prompt)
    except LLMError as e:
        logger.warning(f"Analysis unavailable: {str(e)}")
        return {'answer': None, 'analysis': None}

    decoded = decode_llm_json(text)
    if decoded.data is None:
        return {'answer': decoded.text or None, 'analysis': None}
    return {
        'answer': _as_text(decoded.data.get('answer')),
        'analysis': _as_text(decoded.data.get('analysis')),
    }


def _as_text(value):
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def neutral_sentiment(posts_count: int = 0) -> Dict[str, Any]:
    return {
        'overall': 'neutral',
        'score': 50,
        'postsCount': posts_count,
        'trends': {'support': 0, 'concerns': 0, 'questions': 0},
        'topConcerns': [],
        'keySupport': [],
        'summary': None,
    }


def _clamp_percent(value, default=0):
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return default


async def analyze_sentiment(client: AnthropicClient, subject: str,
                            discussions: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Gauge forum sentiment about a subject

    Args:
        client: LLM client
        subject: proposal title, or a description of the whole ecosystem
        discussions: normalized discussions to read

    Returns:
        {overall, score, postsCount, trends{support, concerns, questions},
         topConcerns, keySupport, summary}; neutral when nothing could be read
    """
    posts_count = sum(d.get('posts_count') or 0 for d in discussions) or len(discussions)
    if not discussions:
        return neutral_sentiment()

    prompt = (
        f"Subject: {subject}\n\n"
        f"Forum discussions:\n{json.dumps([_discussion_brief(d) for d in discussions], default=str)}\n\n"
        f"Classify the overall sentiment as one of {list(SENTIMENT_LABELS)} with a 0-100 score, "
        "estimate the percentage of support, concerns and questions, and list the main concerns "
        "and points of support.\n"
        'Respond with {"overall": ..., "score": ..., "trends": {"support": ..., "concerns": ..., '
        '"questions": ...}, "topConcerns": [...], "keySupport": [...], "summary": "..."}'
    )
    try:
        text = await client.complete(SENTIMENT_SYSTEM_PROMPT, prompt)
    except LLMError as e:
        logger.warning(f"Sentiment analysis unavailable for {subject}: {str(e)}")
        return neutral_sentiment(posts_count)

    data = decode_llm_json(text).data
    if data is None:
        logger.warning(f"Sentiment analysis for {subject} returned no JSON")
        return neutral_sentiment(posts_count)

    trends = data.get('trends') if isinstance(data.get('trends'), dict) else {}
    overall = str(data.get('overall', 'neutral')).lower()
    return {
        'overall': overall if overall in SENTIMENT_LABELS else 'neutral',
        'score': _clamp_percent(data.get('score'), 50),
        'postsCount': posts_count,
        'trends': {key: _clamp_percent(trends.get(key)) for key in ('support', 'concerns', 'questions')},
        'topConcerns': [str(c) for c in data.get('topConcerns') or []][:5],
        'keySupport': [str(s) for s in data.get('keySupport') or []][:5],
        'summary': _as_text(data.get('summary')),
    }
