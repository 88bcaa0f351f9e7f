import asyncio

import pytest

from conftest import FakeLLMClient, ListSink, governance_connection_factory
from gov_assistant.errors import LLMOverloadedError
from gov_assistant.events import EventType, SessionEventEmitter
from gov_assistant.mcp_client.connection import MCPConnectionRegistry, TransportKind
from gov_assistant.mcp_client.orchestrator import (
    GovernanceOrchestrator,
    QueryPhase,
    QuerySession,
    compose_message,
)

SERVERS = (
    ('NEAR Discourse', 'https://discourse.example/sse', TransportKind.SSE),
    ('House of Stake', 'https://mcp.example/mcp', TransportKind.HTTP_STREAMING),
)


def _orchestrator(llm, servers=SERVERS, planner=None):
    registry = MCPConnectionRegistry(governance_connection_factory())

    async def _connect():
        for name, url, kind in servers:
            await registry.add(name, url, kind)

    asyncio.run(_connect())
    return GovernanceOrchestrator(registry, planner=planner, emitter=SessionEventEmitter(),
                                  llm_client_factory=lambda api_key: llm)


def _attached(orchestrator, session):
    sink = ListSink()
    orchestrator.emitter.attach(session.session_id, sink)
    return sink


class TestComposeMessage:
    """Test message selection."""

    def test_prefers_answer(self):
        """Test the direct answer wins over the analysis."""
        assert compose_message([], [], {'answer': 'Yes', 'analysis': 'Long'}) == 'Yes'

    def test_falls_back_to_analysis(self):
        """Test the analysis is used without an answer."""
        assert compose_message([], [], {'answer': None, 'analysis': 'Long'}) == 'Long'

    def test_data_summary(self):
        """Test counts are reported when the LLM gave nothing."""
        message = compose_message([{'id': 1}], [], {'answer': None, 'analysis': None})
        assert message == 'Found 1 relevant proposals and 0 related discussions.'

    def test_nothing_found(self):
        """Test the empty-data message."""
        assert "couldn't find" in compose_message([], [], {'answer': None, 'analysis': None})


class TestRunQuery:
    """Test the synchronous pipeline."""

    def test_active_proposals(self):
        """Test a proposal query returns proposals with fixed confidence."""
        llm = FakeLLMClient([
            {'relevant_proposal_ids': [1, 2], 'relevant_discussion_ids': [], 'explanation': 'both active'},
            {'answer': 'Two proposals are active.', 'analysis': 'Treasury Budget is in voting.'},
        ])
        orchestrator = _orchestrator(llm)
        session = QuerySession('query_1', 'active proposals')

        result = asyncio.run(orchestrator.run_query(session, 'sk-ant-test'))

        assert [p['id'] for p in result['proposals']] == [1, 2]
        assert result['message'] == 'Two proposals are active.'
        assert result['analysis'] == 'Treasury Budget is in voting.'
        assert result['explanation'] == 'both active'
        assert result['confidence'] == 0.8
        assert session.phase is QueryPhase.DONE
        assert session.finished_at is not None

    def test_explicit_id_narrows_result(self):
        """Test 'proposal 2' yields exactly proposal 2."""
        llm = FakeLLMClient([
            {'relevant_proposal_ids': [1, 2], 'relevant_discussion_ids': []},
            {'answer': 'Proposal 2 was approved.'},
        ])
        orchestrator = _orchestrator(llm)
        result = asyncio.run(orchestrator.run_query(
            QuerySession('query_2', 'what is the status of proposal 2'), 'sk-ant-test'))
        assert [p['id'] for p in result['proposals']] == [2]

    def test_llm_outage_degrades_to_data(self):
        """Test an overloaded LLM still returns the gathered data."""
        llm = FakeLLMClient([LLMOverloadedError(3), LLMOverloadedError(3)])
        orchestrator = _orchestrator(llm)
        result = asyncio.run(orchestrator.run_query(QuerySession('query_3', 'active proposals'), 'sk-ant-test'))
        assert len(result['proposals']) == 2
        assert result['message'] == 'Found 2 relevant proposals and 0 related discussions.'

    def test_no_servers(self):
        """Test an empty registry skips analysis and says so."""
        llm = FakeLLMClient()
        orchestrator = _orchestrator(llm, servers=())
        result = asyncio.run(orchestrator.run_query(QuerySession('query_4', 'active proposals'), 'sk-ant-test'))
        assert result['proposals'] == []
        assert "couldn't find" in result['message']
        assert llm.prompts == []

    def test_cross_references_follow_filter(self):
        """Test links only cover records that survived filtering."""
        llm = FakeLLMClient([
            {'relevant_proposal_ids': [1], 'relevant_discussion_ids': [10]},
            {'answer': 'Budget is debated.'},
        ])
        orchestrator = _orchestrator(llm)
        result = asyncio.run(orchestrator.run_query(
            QuerySession('query_5', 'what is happening with NEAR'), 'sk-ant-test'))
        assert result['crossReferences'] == [{'proposalId': 1, 'discussionId': 10, 'confidence': 0.8}]

    def test_failure_is_raised(self, mocker):
        """Test the synchronous variant re-raises after recording the error."""
        planner = mocker.Mock()
        planner.plan_tool_calls.side_effect = RuntimeError('planner broke')
        orchestrator = _orchestrator(FakeLLMClient(), planner=planner)
        session = QuerySession('query_6', 'anything')
        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.run_query(session, 'sk-ant-test'))
        assert session.phase is QueryPhase.ERROR
        assert session.error == 'planner broke'


class TestRunQueryWithEvents:
    """Test the streamed pipeline."""

    def test_event_order(self):
        """Test the run is framed by RUN_STARTED and RUN_FINISHED."""
        llm = FakeLLMClient([
            {'relevant_proposal_ids': [1, 2], 'relevant_discussion_ids': []},
            {'answer': 'Two proposals are active.'},
        ])
        orchestrator = _orchestrator(llm)
        session = QuerySession('query_7', 'active proposals')
        sink = _attached(orchestrator, session)

        asyncio.run(orchestrator.run_query_with_events(session, 'sk-ant-test'))

        types = sink.types()
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.RUN_FINISHED
        assert EventType.RUN_ERROR not in types
        steps = [e['stepName'] for e in sink.events if e['type'] == EventType.STEP_STARTED]
        assert steps == ['planning', 'executing_tools', 'extracting', 'filtering', 'analyzing']
        assert types.index(EventType.TOOL_CALL_START) < types.index(EventType.TOOL_CALL_END) \
            < types.index(EventType.TOOL_CALL_RESULT)
        assert types.index(EventType.TEXT_MESSAGE_START) < types.index(EventType.TEXT_MESSAGE_END) \
            < types.index(EventType.RUN_FINISHED)

        finished = sink.events[-1]
        assert finished['threadId'] == 'query_7'
        assert finished['runId'] == session.run_id
        assert [p['id'] for p in finished['result']['proposals']] == [1, 2]
        assert finished['result']['confidence'] == 0.8
        assert finished['result']['message'] == 'Two proposals are active.'

    def test_streamed_text_matches_message(self):
        """Test the text deltas spell out the final message."""
        answer = 'Treasury Budget is in voting and Validator Rewards has already been approved.'
        llm = FakeLLMClient([{'relevant_proposal_ids': [1, 2], 'relevant_discussion_ids': []}, {'answer': answer}])
        orchestrator = _orchestrator(llm)
        session = QuerySession('query_8', 'active proposals')
        sink = _attached(orchestrator, session)

        asyncio.run(orchestrator.run_query_with_events(session, 'sk-ant-test'))

        deltas = [e['delta'] for e in sink.events if e['type'] == EventType.TEXT_MESSAGE_CONTENT]
        assert ''.join(deltas) == answer

    def test_tool_failure_is_reported(self):
        """Test a failing tool shows up as an unsuccessful TOOL_CALL_RESULT."""
        factory = governance_connection_factory({
            'House of Stake': {'responses': {'get_proposals': RuntimeError('stream reset')}},
        })
        registry = MCPConnectionRegistry(factory)
        asyncio.run(registry.add('House of Stake', 'https://x', TransportKind.HTTP_STREAMING))
        orchestrator = GovernanceOrchestrator(registry, llm_client_factory=lambda key: FakeLLMClient())
        session = QuerySession('query_9', 'active proposals')
        sink = _attached(orchestrator, session)

        asyncio.run(orchestrator.run_query_with_events(session, 'sk-ant-test'))

        results = [e for e in sink.events if e['type'] == EventType.TOOL_CALL_RESULT]
        assert results[0]['success'] is False
        assert results[0]['error'] == 'stream reset'
        assert sink.types()[-1] == EventType.RUN_FINISHED

    def test_pipeline_error_emits_run_error(self, mocker):
        """Test an unexpected failure ends the run with RUN_ERROR."""
        planner = mocker.Mock()
        planner.plan_tool_calls.side_effect = RuntimeError('planner broke')
        orchestrator = _orchestrator(FakeLLMClient(), planner=planner)
        session = QuerySession('query_10', 'anything')
        sink = _attached(orchestrator, session)

        assert asyncio.run(orchestrator.run_query_with_events(session, 'sk-ant-test')) is None

        assert sink.types()[0] == EventType.RUN_STARTED
        assert sink.events[-1]['type'] == EventType.RUN_ERROR
        assert sink.events[-1]['message'] == 'planner broke'
        assert EventType.RUN_FINISHED not in sink.types()
        assert session.phase is QueryPhase.ERROR


class TestSentiment:
    """Test the forum sentiment runs."""

    SENTIMENT = {
        'overall': 'positive', 'score': 72,
        'trends': {'support': 60, 'concerns': 25, 'questions': 15},
        'topConcerns': ['budget size'], 'keySupport': ['ecosystem growth'],
        'summary': 'Mostly supportive.',
    }

    def test_proposal_sentiment(self):
        """Test a proposal sentiment run searches the forum and reports the result."""
        llm = FakeLLMClient([self.SENTIMENT])
        orchestrator = _orchestrator(llm)
        session = QuerySession('query_11', '')
        sink = _attached(orchestrator, session)

        result = asyncio.run(orchestrator.run_proposal_sentiment(session, 'sk-ant-test', 1, 'Treasury Budget'))

        custom = [e for e in sink.events if e['type'] == EventType.CUSTOM]
        assert custom[0]['name'] == 'SENTIMENT_ANALYSIS_COMPLETE'
        assert custom[0]['value']['proposalId'] == 1
        assert custom[0]['value']['overall'] == 'positive'
        assert 'summary' not in custom[0]['value']
        assert result['message'] == 'Mostly supportive.'
        assert [d['id'] for d in result['discussions']] == [10]
        assert sink.types()[-1] == EventType.RUN_FINISHED
        assert 'Treasury Budget' in llm.prompts[0]

    def test_ecosystem_sentiment(self):
        """Test the ecosystem run analyses the latest topics."""
        llm = FakeLLMClient([self.SENTIMENT])
        orchestrator = _orchestrator(llm)
        session = QuerySession('query_12', '')
        sink = _attached(orchestrator, session)

        result = asyncio.run(orchestrator.run_ecosystem_sentiment(session, 'sk-ant-test'))

        custom = [e for e in sink.events if e['type'] == EventType.CUSTOM]
        assert custom[0]['name'] == 'ECOSYSTEM_SENTIMENT_COMPLETE'
        assert custom[0]['value']['score'] == 72
        assert result['message'].startswith('Governance Ecosystem Analysis')
        assert 'budget size' in result['message']
        assert len(result['discussions']) == 2
        assert session.phase is QueryPhase.DONE

    def test_no_forum_is_neutral(self):
        """Test sentiment without a forum server is neutral."""
        llm = FakeLLMClient()
        orchestrator = _orchestrator(llm, servers=SERVERS[1:])
        session = QuerySession('query_13', '')
        _attached(orchestrator, session)

        result = asyncio.run(orchestrator.run_ecosystem_sentiment(session, 'sk-ant-test'))

        assert result['discussions'] == []
        assert 'neutral' in result['message']
        assert llm.prompts == []
