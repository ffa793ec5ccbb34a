"""Tests for TokenEstimator."""

import pytest

from chatcache.models import Message, MessageRole
from chatcache.services.tokens import TokenEstimator


@pytest.fixture
def estimator() -> TokenEstimator:
    return TokenEstimator()


class TestEstimateText:
    @pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
    def test_empty_is_zero(self, estimator: TokenEstimator, text):
        assert estimator.estimate_text(text) == 0

    @pytest.mark.parametrize("text", ["a", "?", "...", "x y", "日本語"])
    def test_non_empty_is_at_least_one(self, estimator: TokenEstimator, text: str):
        assert estimator.estimate_text(text) >= 1

    def test_words_and_punctuation(self, estimator: TokenEstimator):
        # 2 words -> ceil(2.6) = 3, plus ',' and '!'
        assert estimator.estimate_text("Hello, world!") == 5

    def test_ceil_is_exact_on_round_products(self, estimator: TokenEstimator):
        # 10 words * 1.3 is exactly 13; a float product would round up to 14
        assert estimator.estimate_text(" ".join(["word"] * 10)) == 13

    def test_punctuation_only_floors_at_count(self, estimator: TokenEstimator):
        assert estimator.estimate_text("?!") == 2


class TestEstimateMessages:
    def test_message_adds_role_overhead(self, estimator: TokenEstimator):
        message = Message(session_id="s", role=MessageRole.USER, content="Hello, world!")
        assert estimator.estimate_message(message) == 8

    def test_none_message_is_zero(self, estimator: TokenEstimator):
        assert estimator.estimate_message(None) == 0

    def test_list_is_sum(self, estimator: TokenEstimator):
        messages = [
            Message(session_id="s", role=MessageRole.USER, content="one two"),
            Message(session_id="s", role=MessageRole.ASSISTANT, content="three"),
        ]
        expected = sum(estimator.estimate_message(m) for m in messages)
        assert estimator.estimate_messages(messages) == expected
        assert estimator.estimate(messages) == expected

    def test_dispatch(self, estimator: TokenEstimator):
        message = Message(session_id="s", role=MessageRole.USER, content="hi")
        assert estimator.estimate("hi") == estimator.estimate_text("hi")
        assert estimator.estimate(message) == estimator.estimate_message(message)
        assert estimator.estimate(None) == 0
        assert estimator.estimate([]) == 0


class TestAnalyzeSession:
    def test_breakdown(self, estimator: TokenEstimator):
        messages = [
            Message(session_id="s", role=MessageRole.USER, content="one two three"),
            Message(session_id="s", role=MessageRole.ASSISTANT, content="four"),
            Message(session_id="s", role=MessageRole.SYSTEM, content="five"),
        ]
        summary = estimator.analyze_session(messages)

        assert summary.message_count == 3
        assert summary.user == 4 + 3
        assert summary.assistant == 2 + 3
        assert summary.total == estimator.estimate_messages(messages)
        assert summary.average == round(summary.total / 3, 2)
        assert summary.efficiency_ratio > 0

    def test_empty(self, estimator: TokenEstimator):
        summary = estimator.analyze_session([])
        assert summary.total == 0
        assert summary.average == 0.0

    def test_window_helpers(self, estimator: TokenEstimator):
        messages = [Message(session_id="s", role=MessageRole.USER, content="one two three")]
        total = estimator.estimate_messages(messages)
        assert estimator.exceeds_window(messages, total - 1) is True
        assert estimator.exceeds_window(messages, total) is False
        assert estimator.tokens_to_trim(messages, total - 2) == 2
        assert estimator.tokens_to_trim(messages, total + 5) == 0
