"""
Tool Result Extraction and Normalization

Upstream governance servers return loosely shaped JSON, usually wrapped in the
MCP content-block envelope. This module unwraps those payloads, classifies them
with a fixed sequence of named strategies into tagged `Proposals`,
`Discussions` or `Unrecognized` values, normalizes the entities into the
canonical proposal/discussion schema and links discussions to the proposals
they mention.

Strategy order:
    1. payload carries a `proposals` or `proposal` field   -> Proposals
    2. payload carries a `topics`, `posts` or `topic` field -> Discussions
    3. tool name contains "proposal"                        -> Proposals
    4. tool name contains "topic" or "post"                 -> Discussions
    5. anything else                                        -> Unrecognized
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

CROSS_REFERENCE_CONFIDENCE = 0.8
UNTITLED = "Untitled"
NO_EXCERPT = "No excerpt available"
TITLE_FALLBACK_LENGTH = 60

PROPOSAL_FIELDS = ('proposals', 'proposal')
DISCUSSION_FIELDS = ('topics', 'posts', 'topic')
PROPOSAL_TOOL_FRAGMENTS = ('proposal',)
DISCUSSION_TOOL_FRAGMENTS = ('topic', 'post')
# a dict carrying any of these is a record, not a wrapper around a list
RECORD_KEYS = ('id', 'proposal_id', 'title', 'name')


@dataclass
class Proposals:
    items: List[Dict[str, Any]]


@dataclass
class Discussions:
    items: List[Dict[str, Any]]
    kind: str = 'topic'


@dataclass
class Unrecognized:
    raw: Any


Extracted = Union[Proposals, Discussions, Unrecognized]


@dataclass
class RawToolPayload:
    """One tool's result after the MCP content envelope has been unwrapped"""
    tool_name: str
    data: Any = None
    text: Optional[str] = None
    raw: Any = None

    @property
    def is_structured(self) -> bool:
        return isinstance(self.data, (dict, list))

    @classmethod
    def from_tool_result(cls, tool_name: str, result: Any) -> 'RawToolPayload':
        """
        Unwrap a tool result

        `structuredContent` wins when present. Otherwise every `text` content
        block is strictly JSON-decoded; the first block that decodes becomes the
        payload data. Text that is not JSON is kept verbatim so it can still be
        shown to the user.
        """
        if isinstance(result, str):
            return cls._from_text(tool_name, result, raw=result)

        if not isinstance(result, dict) or 'content' not in result:
            return cls(tool_name=tool_name, data=result, raw=result)

        structured = result.get('structuredContent')
        if isinstance(structured, (dict, list)) and structured:
            return cls(tool_name=tool_name, data=structured, raw=result)

        texts = [
            block.get('text', '')
            for block in result.get('content') or []
            if isinstance(block, dict) and block.get('type') == 'text'
        ]
        for text in texts:
            payload = cls._from_text(tool_name, text, raw=result)
            if payload.is_structured:
                return payload
        return cls(tool_name=tool_name, text='\n'.join(texts), raw=result)

    @classmethod
    def _from_text(cls, tool_name: str, text: str, raw: Any) -> 'RawToolPayload':
        try:
            return cls(tool_name=tool_name, data=json.loads(text), raw=raw)
        except (json.JSONDecodeError, TypeError):
            return cls(tool_name=tool_name, text=text, raw=raw)


def _as_list(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict):
        return [value]
    return []


def _records(value: Any) -> List[Dict[str, Any]]:
    """Records from a tool's whole payload; a wrapper object is unwrapped one level"""
    if isinstance(value, dict) and not any(key in value for key in RECORD_KEYS):
        for nested in value.values():
            if isinstance(nested, list):
                return _as_list(nested)
    return _as_list(value)


def _by_proposal_field(payload: RawToolPayload) -> Optional[Extracted]:
    data = payload.data
    if isinstance(data, dict):
        for name in PROPOSAL_FIELDS:
            if name in data:
                return Proposals(_as_list(data[name]))
    return None


def _by_discussion_field(payload: RawToolPayload) -> Optional[Extracted]:
    data = payload.data
    if isinstance(data, dict):
        for name in DISCUSSION_FIELDS:
            if name in data:
                kind = 'post' if name == 'posts' else 'topic'
                return Discussions(_as_list(data[name]), kind=kind)
    return None


def _by_proposal_tool_name(payload: RawToolPayload) -> Optional[Extracted]:
    name = payload.tool_name.lower()
    if payload.is_structured and any(fragment in name for fragment in PROPOSAL_TOOL_FRAGMENTS):
        return Proposals(_records(payload.data))
    return None


def _by_discussion_tool_name(payload: RawToolPayload) -> Optional[Extracted]:
    name = payload.tool_name.lower()
    if payload.is_structured and any(fragment in name for fragment in DISCUSSION_TOOL_FRAGMENTS):
        kind = 'post' if 'post' in name else 'topic'
        return Discussions(_records(payload.data), kind=kind)
    return None


EXTRACTION_STRATEGIES: List[Callable[[RawToolPayload], Optional[Extracted]]] = [
    _by_proposal_field,
    _by_discussion_field,
    _by_proposal_tool_name,
    _by_discussion_tool_name,
]


def classify_payload(payload: RawToolPayload) -> Extracted:
    """Run the extraction strategies in order; the first match wins"""
    for strategy in EXTRACTION_STRATEGIES:
        extracted = strategy(payload)
        if extracted is not None:
            return extracted
    if payload.is_structured:
        return Unrecognized(payload.data)
    return Unrecognized({'text': payload.text, 'raw': payload.raw})


def _placeholder_id(prefix: str, index: int) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{index}"


def _truncate(text: str, length: int = TITLE_FALLBACK_LENGTH) -> str:
    text = ' '.join(str(text).split())
    return text if len(text) <= length else text[:length].rstrip() + '...'


def _count(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def normalize_proposal(item: Dict[str, Any], index: int = 0) -> Dict[str, Any]:
    proposal_id = item.get('id', item.get('proposal_id'))
    description = item.get('description') or item.get('body') or item.get('summary') or ''
    title = item.get('title') or item.get('name') or (_truncate(description) if description else UNTITLED)
    return {
        'id': proposal_id if proposal_id not in (None, '') else _placeholder_id('proposal', index),
        'title': title,
        'description': description,
        'status': item.get('status') or 'unknown',
        'proposer_id': item.get('proposer_id') or item.get('proposer') or item.get('author') or 'unknown',
        'votes_for': _count(item.get('votes_for')),
        'votes_against': _count(item.get('votes_against')),
        'voting_options': item.get('voting_options'),
        'voting_ends': item.get('voting_ends') or item.get('voting_end'),
        'link': item.get('link') or item.get('url'),
        'created_at': item.get('created_at') or item.get('creation_time'),
        'updated_at': item.get('updated_at'),
    }


def normalize_discussion(item: Dict[str, Any], index: int = 0, kind: str = 'topic') -> Dict[str, Any]:
    discussion_id = item.get('id', item.get('topic_id'))
    excerpt = item.get('excerpt') or item.get('blurb') or item.get('raw') or NO_EXCERPT
    title = item.get('title') or item.get('fancy_title') or item.get('topic_title')
    if not title:
        title = _truncate(excerpt) if excerpt != NO_EXCERPT else UNTITLED
    return {
        'id': discussion_id if discussion_id not in (None, '') else _placeholder_id('discussion', index),
        'title': title,
        'excerpt': excerpt,
        'posts_count': _count(item.get('posts_count') or item.get('reply_count')),
        'views': _count(item.get('views')),
        'type': item.get('type') or kind,
        'last_activity': item.get('last_posted_at') or item.get('bumped_at') or item.get('created_at'),
        'url': item.get('url'),
    }


def build_cross_references(proposals: List[Dict[str, Any]],
                           discussions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Link each discussion whose title or excerpt contains a proposal's title"""
    references = []
    for proposal in proposals:
        needle = str(proposal.get('title', '')).lower()
        if not needle:
            continue
        for discussion in discussions:
            haystack = f"{discussion.get('title', '')} {discussion.get('excerpt', '')}".lower()
            if needle in haystack:
                references.append({
                    'proposalId': proposal['id'],
                    'discussionId': discussion['id'],
                    'confidence': CROSS_REFERENCE_CONFIDENCE,
                })
    return references


@dataclass
class ExtractionResult:
    proposals: List[Dict[str, Any]] = field(default_factory=list)
    discussions: List[Dict[str, Any]] = field(default_factory=list)
    cross_references: List[Dict[str, Any]] = field(default_factory=list)
    unrecognized: List[Dict[str, Any]] = field(default_factory=list)


def _dedupe(entities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for entity in entities:
        key = str(entity['id'])
        if key not in seen:
            seen.add(key)
            unique.append(entity)
    return unique


def extract(results) -> ExtractionResult:
    """
    Turn successful tool invocation results into normalized governance data

    Args:
        results: iterable of ToolInvocationResult; failed invocations are skipped

    Returns:
        ExtractionResult with de-duplicated proposals and discussions, their
        cross references, and the payloads no strategy recognized
    """
    extraction = ExtractionResult()
    for result in results:
        if not result.success:
            continue
        payload = RawToolPayload.from_tool_result(result.tool_name, result.result)
        extracted = classify_payload(payload)

        if isinstance(extracted, Proposals):
            offset = len(extraction.proposals)
            extraction.proposals.extend(
                normalize_proposal(item, offset + i) for i, item in enumerate(extracted.items)
            )
        elif isinstance(extracted, Discussions):
            offset = len(extraction.discussions)
            extraction.discussions.extend(
                normalize_discussion(item, offset + i, extracted.kind) for i, item in enumerate(extracted.items)
            )
        else:
            logger.debug(f"Unrecognized payload from tool {result.tool_name}")
            extraction.unrecognized.append({
                'tool_name': result.tool_name,
                'server_id': result.server_id,
                'data': extracted.raw,
            })

    extraction.proposals = _dedupe(extraction.proposals)
    extraction.discussions = _dedupe(extraction.discussions)
    extraction.cross_references = build_cross_references(extraction.proposals, extraction.discussions)
    logger.info(
        f"Extracted {len(extraction.proposals)} proposals, {len(extraction.discussions)} discussions, "
        f"{len(extraction.cross_references)} cross references"
    )
    return extraction
