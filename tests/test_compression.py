"""Tests for ContextCompressor."""

import pytest

from chatcache.models import Message, MessageRole
from chatcache.services.compression import ContextCompressor
from chatcache.services.tokens import TokenEstimator

# 13 words -> ceil(16.9) = 17 tokens, +3 role overhead = 20 per message
TWENTY_TOKEN_TEXT = " ".join(["word"] * 13)


def _message(role: MessageRole, content: str = TWENTY_TOKEN_TEXT) -> Message:
    return Message(session_id="s1", role=role, content=content)


def _alternating(count: int, first: MessageRole = MessageRole.USER) -> list[Message]:
    other = MessageRole.ASSISTANT if first == MessageRole.USER else MessageRole.USER
    return [_message(first if i % 2 == 0 else other) for i in range(count)]


@pytest.fixture
def compressor() -> ContextCompressor:
    return ContextCompressor(TokenEstimator())


class TestNoCompression:
    def test_empty_input_is_noop(self, compressor: ContextCompressor):
        result = compressor.compress([], 50)
        assert result.kept_messages == []
        assert result.was_compressed is False
        assert result.final_token_count == 0
        assert result.compression_ratio == 0

    def test_under_budget_returns_input_unchanged(self, compressor: ContextCompressor):
        messages = _alternating(5)
        result = compressor.compress(messages, 4000)

        assert result.kept_messages == messages
        assert result.was_compressed is False
        assert result.summary == ""
        assert result.final_token_count == 100
        assert result.tokens_removed == 0

    def test_exactly_at_budget_is_not_compressed(self, compressor: ContextCompressor):
        result = compressor.compress(_alternating(5), 100)
        assert result.was_compressed is False

    def test_ten_or_fewer_over_budget_keeps_everything(self, compressor: ContextCompressor):
        messages = _alternating(10)
        result = compressor.compress(messages, 10)

        assert result.was_compressed is True
        assert result.kept_messages == messages
        assert result.summary == ""
        assert result.tokens_removed == 0


class TestCompression:
    def test_eleven_messages_against_tiny_budget(self, compressor: ContextCompressor):
        messages = _alternating(11, first=MessageRole.ASSISTANT)
        assert sum(m.role == MessageRole.USER for m in messages) == 5

        result = compressor.compress(messages, 50)

        assert result.was_compressed is True
        assert result.kept_messages == messages[-10:]
        assert result.summary
        assert "user messages" in result.summary
        assert "assistant messages" in result.summary
        assert "- 0 user messages, 1 assistant messages" in result.summary

    @pytest.mark.parametrize("count, budget", [(11, 50), (30, 100), (60, 1000), (250, 4000)])
    def test_most_recent_ten_always_kept(self, compressor: ContextCompressor, count: int, budget: int):
        messages = _alternating(count)
        result = compressor.compress(messages, budget)

        assert result.was_compressed is True
        assert result.kept_messages[-10:] == messages[-10:]

    @pytest.mark.parametrize("count, budget", [(11, 50), (30, 100), (50, 800), (250, 4000)])
    def test_removed_plus_final_equals_original(
        self, compressor: ContextCompressor, count: int, budget: int
    ):
        messages = _alternating(count)
        original = compressor.estimator.estimate_messages(messages)
        result = compressor.compress(messages, budget)

        assert result.was_compressed is True
        assert result.tokens_removed + result.final_token_count == original

    def test_keeps_beyond_ten_while_under_target(self, compressor: ContextCompressor):
        # budget 800 -> target 300 -> fifteen 20-token messages fit
        messages = _alternating(50)
        result = compressor.compress(messages, 800)

        assert result.kept_messages == messages[-15:]
        assert "(35 messages)" in result.summary

    def test_compression_ratio(self, compressor: ContextCompressor):
        result = compressor.compress(_alternating(50), 800)
        expected = result.tokens_removed / (result.final_token_count + result.tokens_removed)
        assert result.compression_ratio == pytest.approx(expected)
        assert 0 < result.compression_ratio < 1


class TestSummary:
    def test_topics_from_user_messages(self, compressor: ContextCompressor):
        dropped = [
            _message(MessageRole.USER, "Redis caching strategy for sessions"),
            _message(MessageRole.USER, "More redis caching questions please"),
            _message(MessageRole.ASSISTANT, "assistant words never become topics topics topics"),
            _message(MessageRole.USER, "redis again"),
        ]
        summary = compressor.summarize(dropped)

        assert summary.startswith("Previous conversation summary (4 messages):")
        assert "- 3 user messages, 1 assistant messages" in summary
        assert "- Main topics: redis, caching, strategy" in summary
        assert "topics" not in summary.split("Main topics:")[1].split("\n")[0]

    def test_stop_words_and_short_words_excluded(self, compressor: ContextCompressor):
        summary = compressor.summarize([_message(MessageRole.USER, "this that with have kubernetes")])
        assert "- Main topics: kubernetes" in summary

    def test_key_exchanges_truncated_and_capped(self, compressor: ContextCompressor):
        long_question = "Why does the cache " + "x" * 80 + "?"
        dropped = [_message(MessageRole.USER, long_question) for _ in range(7)]
        summary = compressor.summarize(dropped)

        exchanges = [line for line in summary.splitlines() if line.startswith("  User: ")]
        assert len(exchanges) == 5
        assert exchanges[0] == "  User: " + long_question[:50] + "..."

    @pytest.mark.parametrize(
        "content, important",
        [
            ("is it ready?", True),
            ("tell me how it works", True),
            ("there is a problem here", True),
            ("an Error occurred", True),
            ("x" * 101, True),
            ("plain statement", False),
        ],
    )
    def test_importance(self, compressor: ContextCompressor, content: str, important: bool):
        summary = compressor.summarize([_message(MessageRole.ASSISTANT, content)])
        assert ("- Key exchanges:" in summary) is important

    def test_empty_dropped_gives_empty_summary(self, compressor: ContextCompressor):
        assert compressor.summarize([]) == ""


class TestAnalyze:
    @pytest.mark.parametrize(
        "count, needs, fragment",
        [
            (10, False, "small"),
            (60, False, "moderate"),
            (150, False, "consider compression soon"),
            (250, True, "compression recommended"),
        ],
    )
    def test_recommendation_tiers(
        self, compressor: ContextCompressor, count: int, needs: bool, fragment: str
    ):
        analysis = compressor.analyze(_alternating(count))

        assert analysis.total_tokens == count * 20
        assert analysis.message_count == count
        assert analysis.needs_compression is needs
        assert fragment in analysis.recommendation
        assert analysis.potential_savings == (count * 20 - 2000 if needs else 0)

    def test_breakdown(self, compressor: ContextCompressor):
        analysis = compressor.analyze(_alternating(4))
        assert analysis.user_tokens == 40
        assert analysis.assistant_tokens == 40
        assert analysis.average_tokens == 20.0


class TestBuildContext:
    def test_summary_prepended_as_system_message(self, compressor: ContextCompressor):
        messages = _alternating(11, first=MessageRole.ASSISTANT)
        context = compressor.build_context(messages, 50)

        assert len(context) == 11
        assert context[0]["role"] == "system"
        assert context[0]["content"].startswith("Previous conversation summary")
        assert context[1:] == [{"role": m.role.value, "content": m.content} for m in messages[-10:]]

    def test_no_summary_when_under_budget(self, compressor: ContextCompressor):
        messages = _alternating(3)
        context = compressor.build_context(messages, 4000)
        assert [c["role"] for c in context] == ["user", "assistant", "user"]
