"""
Governance Query Orchestration

This module drives one governance question through the full pipeline:
plan tool calls, execute them across the session's upstream servers, extract
normalized proposals and discussions, filter them with the LLM and ask the
LLM for a direct answer. The same pipeline backs the synchronous query route
and the event-streaming route; the streaming variant reports every stage,
tool call and the final message through the session event emitter.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from gov_assistant import events
from gov_assistant.events import SessionEventEmitter, TextMessageStream
from gov_assistant.llm_pipeline import AnthropicClient, analyze, analyze_sentiment, filter_relevant
from gov_assistant.logging_utils import add_log_entry, log_performance

from .extraction import CROSS_REFERENCE_CONFIDENCE, ExtractionResult, extract
from .tools import MCPToolInvoker
from .translator import MCPQueryPlanner

logger = logging.getLogger(__name__)

RESPONSE_CONFIDENCE = CROSS_REFERENCE_CONFIDENCE
ECOSYSTEM_SUBJECT = "the NEAR governance ecosystem"
ECOSYSTEM_TITLE = "Governance Ecosystem Analysis"


class QueryPhase(str, Enum):
    PLANNING = 'planning'
    EXECUTING = 'executing'
    EXTRACTING = 'extracting'
    FILTERING = 'filtering'
    ANALYZING = 'analyzing'
    DONE = 'done'
    ERROR = 'error'


@dataclass
class QuerySession:
    session_id: str
    query: str = ''
    phase: QueryPhase = QueryPhase.PLANNING
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    run_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.phase in (QueryPhase.DONE, QueryPhase.ERROR)

    def advance(self, phase: QueryPhase):
        logger.debug(f"Query session {self.session_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase
        if self.finished:
            self.finished_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'query': self.query,
            'phase': self.phase.value,
            'createdAt': self.created_at,
            'finishedAt': self.finished_at,
            'error': self.error,
        }


def compose_message(proposals: List[Dict[str, Any]], discussions: List[Dict[str, Any]],
                    analysis: Dict[str, Optional[str]]) -> str:
    """Pick the user-facing message: direct answer, then analysis, then a data summary"""
    if analysis.get('answer'):
        return analysis['answer']
    if analysis.get('analysis'):
        return analysis['analysis']
    if not proposals and not discussions:
        return ("I couldn't find governance data for that question. "
                "Make sure a forum or proposal server is connected and try again.")
    return f"Found {len(proposals)} relevant proposals and {len(discussions)} related discussions."


class GovernanceOrchestrator:
    """
    Runs governance queries against one session's connection registry
    """

    def __init__(self, registry, invoker: Optional[MCPToolInvoker] = None,
                 planner: Optional[MCPQueryPlanner] = None,
                 emitter: Optional[SessionEventEmitter] = None,
                 llm_client_factory: Optional[Callable[[str], Any]] = None):
        self.registry = registry
        self.invoker = invoker or MCPToolInvoker(registry)
        self.planner = planner or MCPQueryPlanner()
        self.emitter = emitter or SessionEventEmitter()
        self.llm_client_factory = llm_client_factory or AnthropicClient

    def _emitter_for(self, session: QuerySession, streaming: bool):
        if not streaming:
            return lambda event: None
        return lambda event: self.emitter.emit(session.session_id, event)

    async def _step(self, session, emit, phase, step_name, work):
        session.advance(phase)
        emit(events.step_started(step_name))
        result = await work()
        emit(events.step_finished(step_name))
        return result

    def _tool_listener(self, emit):
        def listener(stage, plan, result):
            if stage == 'start':
                emit(events.tool_call_start(plan.call_id, plan.tool_name, plan.server_id))
            else:
                emit(events.tool_call_end(plan.call_id, plan.tool_name, plan.server_id))
                emit(events.tool_call_result(plan.call_id, plan.tool_name, result.success, result.error))
        return listener

    async def gather(self, session: QuerySession, emit=None) -> ExtractionResult:
        """Plan, execute and extract; every tool failure degrades to partial data"""
        emit = emit or (lambda event: None)

        async def _plan():
            state = await self.registry.describe()
            return self.planner.plan_tool_calls(session.query, state)

        plans = await self._step(session, emit, QueryPhase.PLANNING, 'planning', _plan)

        async def _execute():
            return await self.invoker.execute_all(plans, listener=self._tool_listener(emit))

        results = await self._step(session, emit, QueryPhase.EXECUTING, 'executing_tools', _execute)

        async def _extract():
            return extract(results)

        return await self._step(session, emit, QueryPhase.EXTRACTING, 'extracting', _extract)

    async def _run_pipeline(self, session: QuerySession, api_key: str, emit) -> Dict[str, Any]:
        start_time = time.time()
        client = self.llm_client_factory(api_key)
        extraction = await self.gather(session, emit)

        async def _filter():
            return await filter_relevant(client, session.query, extraction.proposals, extraction.discussions)

        outcome = await self._step(session, emit, QueryPhase.FILTERING, 'filtering', _filter)

        async def _analyze():
            if not outcome.proposals and not outcome.discussions:
                return {'answer': None, 'analysis': None}
            return await analyze(client, session.query, outcome.proposals, outcome.discussions)

        analysis = await self._step(session, emit, QueryPhase.ANALYZING, 'analyzing', _analyze)

        wanted = {str(p['id']) for p in outcome.proposals} | {str(d['id']) for d in outcome.discussions}
        cross_references = [
            ref for ref in extraction.cross_references
            if str(ref['proposalId']) in wanted and str(ref['discussionId']) in wanted
        ]

        log_performance(f"query pipeline {session.session_id}", int((time.time() - start_time) * 1000),
                        {'proposals': len(outcome.proposals), 'discussions': len(outcome.discussions)})
        return {
            'message': compose_message(outcome.proposals, outcome.discussions, analysis),
            'proposals': outcome.proposals,
            'discussions': outcome.discussions,
            'crossReferences': cross_references,
            'confidence': RESPONSE_CONFIDENCE,
            'explanation': outcome.explanation,
            'analysis': analysis.get('analysis'),
        }

    async def run_query(self, session: QuerySession, api_key: str) -> Dict[str, Any]:
        """
        Synchronous variant: run the full pipeline and return the result body

        Returns:
            {message, proposals, discussions, crossReferences, confidence,
             explanation, analysis}
        """
        logger.info(f"Running query for session {session.session_id}: {session.query}")
        try:
            result = await self._run_pipeline(session, api_key, self._emitter_for(session, False))
        except Exception as e:
            self._fail(session, e)
            raise
        session.advance(QueryPhase.DONE)
        return result

    async def run_query_with_events(self, session: QuerySession, api_key: str):
        """
        Streaming variant: wait for the browser's stream, then emit the run

        Event order: RUN_STARTED, STEP_*/TOOL_CALL_* per stage, the message as
        TEXT_MESSAGE_START/CONTENT/END, then RUN_FINISHED (or RUN_ERROR).
        """
        emit = self._emitter_for(session, True)
        await self.emitter.wait_for_sink(session.session_id)
        emit(events.run_started(session.session_id, session.run_id))
        add_log_entry(f"Query started: {session.query[:80]}")

        try:
            result = await self._run_pipeline(session, api_key, emit)
        except Exception as e:
            self._fail(session, e)
            emit(events.run_error(str(e) or e.__class__.__name__))
            return None

        self._stream_message(session, result['message'])
        emit(events.run_finished(session.session_id, session.run_id, {
            'message': result['message'],
            'proposals': result['proposals'],
            'discussions': result['discussions'],
            'confidence': result['confidence'],
            'analysis': result['analysis'],
            'crossReferences': result['crossReferences'],
        }))
        session.advance(QueryPhase.DONE)
        add_log_entry(f"Query finished: {len(result['proposals'])} proposals, "
                      f"{len(result['discussions'])} discussions")
        return result

    async def run_proposal_sentiment(self, session: QuerySession, api_key: str,
                                     proposal_id: Any, proposal_title: str):
        """Search the forum for a proposal and report its community sentiment"""
        async def _run(emit, client):
            discussions = await self._gather_forum(session, emit, proposal_title)
            session.advance(QueryPhase.ANALYZING)
            sentiment = await analyze_sentiment(client, proposal_title, discussions)
            value = {'proposalId': proposal_id, **{k: v for k, v in sentiment.items() if k != 'summary'}}
            emit(events.custom('SENTIMENT_ANALYSIS_COMPLETE', value))
            message = sentiment.get('summary') or (
                f"Community sentiment on \"{proposal_title}\" is {sentiment['overall']} "
                f"({sentiment['score']}%) across {sentiment['postsCount']} posts."
            )
            return message, discussions, sentiment.get('summary')

        return await self._run_sentiment(session, api_key, _run)

    async def run_ecosystem_sentiment(self, session: QuerySession, api_key: str):
        """Analyse the latest forum topics as a whole"""
        async def _run(emit, client):
            discussions = await self._gather_forum(session, emit, None)
            session.advance(QueryPhase.ANALYZING)
            sentiment = await analyze_sentiment(client, ECOSYSTEM_SUBJECT, discussions)
            emit(events.custom('ECOSYSTEM_SENTIMENT_COMPLETE', sentiment))
            lines = [
                f"{ECOSYSTEM_TITLE}\n",
                f"Overall sentiment: {sentiment['overall']} ({sentiment['score']}%) "
                f"across {len(discussions)} recent topics.",
            ]
            if sentiment.get('summary'):
                lines.append(f"\n{sentiment['summary']}")
            if sentiment['topConcerns']:
                lines.append("\nTop concerns: " + "; ".join(sentiment['topConcerns']))
            if sentiment['keySupport']:
                lines.append("\nKey support: " + "; ".join(sentiment['keySupport']))
            return "\n".join(lines), discussions, sentiment.get('summary')

        return await self._run_sentiment(session, api_key, _run)

    async def _gather_forum(self, session, emit, search_terms):
        async def _plan():
            state = await self.registry.describe()
            return self.planner.plan_forum_calls(state, search_terms)

        plans = await self._step(session, emit, QueryPhase.PLANNING, 'planning', _plan)

        async def _execute():
            return await self.invoker.execute_all(plans, listener=self._tool_listener(emit))

        results = await self._step(session, emit, QueryPhase.EXECUTING, 'executing_tools', _execute)
        session.advance(QueryPhase.EXTRACTING)
        return extract(results).discussions

    async def _run_sentiment(self, session, api_key, body):
        emit = self._emitter_for(session, True)
        await self.emitter.wait_for_sink(session.session_id)
        emit(events.run_started(session.session_id, session.run_id))
        try:
            client = self.llm_client_factory(api_key)
            message, discussions, analysis_text = await body(emit, client)
        except Exception as e:
            self._fail(session, e)
            emit(events.run_error(str(e) or e.__class__.__name__))
            return None

        self._stream_message(session, message)
        result = {
            'message': message,
            'proposals': [],
            'discussions': discussions,
            'confidence': RESPONSE_CONFIDENCE,
            'analysis': analysis_text,
            'crossReferences': [],
        }
        emit(events.run_finished(session.session_id, session.run_id, result))
        session.advance(QueryPhase.DONE)
        return result

    def _stream_message(self, session: QuerySession, message: str):
        with TextMessageStream(self.emitter, session.session_id) as stream:
            stream.write_text(message)

    @staticmethod
    def _fail(session: QuerySession, error: Exception):
        session.error = str(error) or error.__class__.__name__
        session.advance(QueryPhase.ERROR)
        logger.error(f"Query session {session.session_id} failed: {session.error}")
        add_log_entry(f"Query failed: {session.error}", level="error")
