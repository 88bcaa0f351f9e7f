import asyncio
import json

import pytest

from conftest import FakeLLMClient
from gov_assistant.errors import LLMError, LLMOverloadedError, LLMRequestError
from gov_assistant.llm_pipeline import (
    AnthropicClient,
    analyze,
    analyze_sentiment,
    decode_llm_json,
    extract_explicit_ids,
    filter_relevant,
)

PROPOSALS = [
    {'id': 1, 'title': 'Treasury Budget', 'status': 'Voting'},
    {'id': 2, 'title': 'Validator Rewards', 'status': 'Approved'},
    {'id': 3, 'title': 'Grants Round', 'status': 'Draft'},
]
DISCUSSIONS = [
    {'id': 10, 'title': 'Budget thread', 'excerpt': 'Treasury Budget'},
    {'id': 11, 'title': 'Call notes', 'excerpt': 'agenda'},
]


def _ok_body(text):
    return json.dumps({'content': [{'type': 'text', 'text': text}]})


class ScriptedClient(AnthropicClient):
    """AnthropicClient whose HTTP layer replays scripted (status, body) pairs"""

    def __init__(self, replies, **kwargs):
        self.sleeps = []

        async def _record_sleep(delay):
            self.sleeps.append(delay)

        super().__init__('sk-ant-test', sleep=_record_sleep, **kwargs)
        self.replies = list(replies)
        self.payloads = []

    async def _send(self, payload):
        self.payloads.append(payload)
        return self.replies.pop(0)


class TestAnthropicClient:
    """Test completion and retry behaviour."""

    def test_success(self):
        """Test a 200 response returns the text blocks."""
        client = ScriptedClient([(200, _ok_body('hello'))])
        assert asyncio.run(client.complete('sys', 'prompt')) == 'hello'
        assert client.payloads[0]['messages'] == [{'role': 'user', 'content': 'prompt'}]
        assert client.payloads[0]['system'] == 'sys'

    def test_retries_overloaded_with_backoff(self):
        """Test two overloaded replies are retried after 1s then 2s."""
        client = ScriptedClient([(529, 'overloaded'), (529, 'overloaded'), (200, _ok_body('done'))],
                                max_attempts=3, initial_backoff=1.0)
        assert asyncio.run(client.complete('sys', 'prompt')) == 'done'
        assert client.sleeps == [1.0, 2.0]
        assert len(client.payloads) == 3

    def test_gives_up_after_max_attempts(self):
        """Test exhausted retries raise LLMOverloadedError."""
        client = ScriptedClient([(529, '')] * 3, max_attempts=3, initial_backoff=1.0)
        with pytest.raises(LLMOverloadedError):
            asyncio.run(client.complete('sys', 'prompt'))
        assert client.sleeps == [1.0, 2.0]

    def test_no_retry_on_other_errors(self):
        """Test a non-overload error status fails immediately."""
        client = ScriptedClient([(500, 'boom'), (200, _ok_body('never'))])
        with pytest.raises(LLMRequestError) as excinfo:
            asyncio.run(client.complete('sys', 'prompt'))
        assert excinfo.value.status == 500
        assert client.sleeps == []
        assert len(client.payloads) == 1

    def test_unreadable_body(self):
        """Test a non-JSON success body raises LLMError."""
        client = ScriptedClient([(200, '<html>')])
        with pytest.raises(LLMError):
            asyncio.run(client.complete('sys', 'prompt'))

    def test_headers(self):
        """Test the API key and version headers are sent."""
        headers = AnthropicClient('sk-ant-abc')._headers()
        assert headers['x-api-key'] == 'sk-ant-abc'
        assert 'anthropic-version' in headers


class TestDecodeLLMJson:
    """Test the three-step JSON decode."""

    def test_strict(self):
        """Test clean JSON parses strictly."""
        decoded = decode_llm_json('{"a": 1}')
        assert decoded.data == {'a': 1}
        assert decoded.strategy == 'json'

    def test_substring(self):
        """Test JSON wrapped in prose is recovered."""
        decoded = decode_llm_json('Sure! Here you go: {"a": 1} Hope that helps.')
        assert decoded.data == {'a': 1}
        assert decoded.strategy == 'substring'

    def test_braces_after_object(self):
        """Test trailing braces in prose do not spoil the object before them."""
        decoded = decode_llm_json('{"answer": "Approved"} (see {notes})')
        assert decoded.data == {'answer': 'Approved'}
        assert decoded.strategy == 'substring'

    def test_braces_before_object(self):
        """Test a stray brace ahead of the object is skipped."""
        decoded = decode_llm_json('Using {placeholders}: {"answer": "Approved"}')
        assert decoded.data == {'answer': 'Approved'}

    def test_plain_text(self):
        """Test text without JSON falls back to opaque text."""
        decoded = decode_llm_json('No JSON here')
        assert decoded.data is None
        assert decoded.text == 'No JSON here'
        assert decoded.strategy == 'text'


class TestExplicitIds:
    """Test explicit proposal id detection."""

    def test_forms(self):
        """Test the supported id spellings."""
        assert extract_explicit_ids('what is the status of proposal 2') == [2]
        assert extract_explicit_ids('proposal #2') == [2]
        assert extract_explicit_ids('how did #7 do?') == [7]

    def test_no_ids(self):
        """Test a broad query has no ids."""
        assert extract_explicit_ids('latest proposals') == []


class TestFilterRelevant:
    """Test the relevance filter step."""

    def test_explicit_id_is_exact(self):
        """Test 'proposal 2' selects exactly id 2 even if the model adds more."""
        llm = FakeLLMClient([{'relevant_proposal_ids': [1, 2], 'relevant_discussion_ids': [],
                              'explanation': 'matched'}])
        outcome = asyncio.run(filter_relevant(llm, 'status of proposal 2', PROPOSALS, DISCUSSIONS))
        assert outcome.relevant_proposal_ids == [2]
        assert [p['id'] for p in outcome.proposals] == [2]
        assert 'relevant_proposal_ids must be exactly [2]' in llm.prompts[0]

    def test_broad_query_keeps_many(self):
        """Test the model's selection is applied for broad queries."""
        llm = FakeLLMClient([{'relevant_proposal_ids': [1, 3], 'relevant_discussion_ids': [10]}])
        outcome = asyncio.run(filter_relevant(llm, 'latest proposals', PROPOSALS, DISCUSSIONS))
        assert [p['id'] for p in outcome.proposals] == [1, 3]
        assert [d['id'] for d in outcome.discussions] == [10]
        assert outcome.filtered

    def test_string_ids_match(self):
        """Test ids are compared as strings."""
        llm = FakeLLMClient([{'relevant_proposal_ids': ['1'], 'relevant_discussion_ids': ['11']}])
        outcome = asyncio.run(filter_relevant(llm, 'budget', PROPOSALS, DISCUSSIONS))
        assert [p['id'] for p in outcome.proposals] == [1]
        assert [d['id'] for d in outcome.discussions] == [11]

    def test_fails_open_on_llm_error(self):
        """Test an LLM failure returns the unfiltered data."""
        llm = FakeLLMClient([LLMOverloadedError(3)])
        outcome = asyncio.run(filter_relevant(llm, 'budget', PROPOSALS, DISCUSSIONS))
        assert outcome.proposals == PROPOSALS
        assert outcome.discussions == DISCUSSIONS
        assert not outcome.filtered

    def test_fails_open_on_non_json(self):
        """Test prose output keeps everything and becomes the explanation."""
        llm = FakeLLMClient(['I think they are all relevant'])
        outcome = asyncio.run(filter_relevant(llm, 'budget', PROPOSALS, DISCUSSIONS))
        assert outcome.proposals == PROPOSALS
        assert outcome.explanation == 'I think they are all relevant'

    def test_non_json_still_honours_explicit_id(self):
        """Test prose output does not undo an id named in the question."""
        llm = FakeLLMClient(['Sorry, proposal 2 looks relevant.'])
        outcome = asyncio.run(filter_relevant(llm, 'what is the status of proposal 2', PROPOSALS, DISCUSSIONS))
        assert [p['id'] for p in outcome.proposals] == [2]
        assert outcome.relevant_proposal_ids == [2]
        assert outcome.discussions == DISCUSSIONS
        assert outcome.explanation == 'Sorry, proposal 2 looks relevant.'

    def test_nothing_to_filter(self):
        """Test empty inputs skip the LLM call."""
        llm = FakeLLMClient()
        outcome = asyncio.run(filter_relevant(llm, 'budget', [], []))
        assert outcome.proposals == []
        assert llm.prompts == []


class TestAnalyze:
    """Test the analysis step."""

    def test_json_answer(self):
        """Test answer and analysis are read from JSON output."""
        llm = FakeLLMClient([{'answer': 'Approved', 'analysis': 'Proposal 2 passed.'}])
        result = asyncio.run(analyze(llm, 'status of proposal 2', PROPOSALS[1:2], []))
        assert result == {'answer': 'Approved', 'analysis': 'Proposal 2 passed.'}

    def test_text_becomes_answer(self):
        """Test non-JSON text is used as the answer."""
        llm = FakeLLMClient(['It was approved.'])
        result = asyncio.run(analyze(llm, 'q', PROPOSALS, []))
        assert result == {'answer': 'It was approved.', 'analysis': None}

    def test_error_yields_nulls(self):
        """Test any LLM error yields null answer and analysis."""
        llm = FakeLLMClient([LLMRequestError(400, 'bad')])
        result = asyncio.run(analyze(llm, 'q', PROPOSALS, []))
        assert result == {'answer': None, 'analysis': None}


class TestAnalyzeSentiment:
    """Test forum sentiment analysis."""

    def test_parses_and_clamps(self):
        """Test the model's output is normalized."""
        llm = FakeLLMClient([{'overall': 'Positive', 'score': 140,
                              'trends': {'support': 70, 'concerns': 20, 'questions': 10},
                              'topConcerns': ['cost'], 'keySupport': ['growth']}])
        sentiment = asyncio.run(analyze_sentiment(llm, 'Treasury Budget', DISCUSSIONS))
        assert sentiment['overall'] == 'positive'
        assert sentiment['score'] == 100
        assert sentiment['trends'] == {'support': 70, 'concerns': 20, 'questions': 10}
        assert sentiment['topConcerns'] == ['cost']

    def test_neutral_without_discussions(self):
        """Test no discussions gives a neutral result without calling the model."""
        llm = FakeLLMClient()
        sentiment = asyncio.run(analyze_sentiment(llm, 'Treasury Budget', []))
        assert sentiment['overall'] == 'neutral'
        assert llm.prompts == []

    def test_neutral_on_failure(self):
        """Test an LLM failure falls back to neutral."""
        llm = FakeLLMClient([LLMOverloadedError(3)])
        sentiment = asyncio.run(analyze_sentiment(llm, 'Treasury Budget', DISCUSSIONS))
        assert sentiment['overall'] == 'neutral'
        assert sentiment['score'] == 50
