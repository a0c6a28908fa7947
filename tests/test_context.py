"""Tests for context assembly and prompt building."""

from datetime import datetime, timezone

from news_rag.context import (
    NO_CONTEXT_TEXT,
    ContextAssembler,
    build_prompt,
    format_history,
)
from news_rag.models import Message, MessageRole


class TestContextAssembler:

    def test_orders_by_descending_score_with_stable_ties(self, make_candidate):
        """Test equal scores keep retrieval order."""
        candidates = [
            make_candidate("a", 0.8),
            make_candidate("b", 0.9),
            make_candidate("c", 0.8),
        ]

        assembled = ContextAssembler().assemble(candidates)

        assert [c.id for c in assembled.candidates] == ["b", "a", "c"]
        assert [s.title for s in assembled.sources] == ["Article b", "Article a", "Article c"]

    def test_renders_one_block_per_candidate(self, make_candidate):
        """Test each block carries title, content and published date."""
        assembled = ContextAssembler().assemble([
            make_candidate("a", 0.9, title="Flying cars collide", content="Two flying cars collided."),
            make_candidate("b", 0.8, publishedDate=None),
        ])

        blocks = assembled.context_block.split("\n\n")
        assert blocks[0] == (
            "Source 1: Flying cars collide\n"
            "Content: Two flying cars collided.\n"
            "Published: 2025-09-17T12:15:00Z"
        )
        assert blocks[1].endswith("Published: Unknown date")

    def test_content_is_not_truncated(self, make_candidate):
        """Test long payload content reaches the prompt unchanged."""
        long_content = "word " * 1000
        assembled = ContextAssembler().assemble([make_candidate("a", 0.9, content=long_content)])

        assert long_content.strip() in assembled.context_block

    def test_sources_use_payload_defaults(self, make_candidate):
        """Test missing fields fall back to placeholders and scores are clamped."""
        candidate = make_candidate("a", 1.2, title=None, source=None, url=None, content="x" * 400)

        source = ContextAssembler().assemble([candidate]).sources[0]

        assert source.title == "Untitled"
        assert source.source == "Unknown Source"
        assert source.url == "#"
        assert source.snippet == "x" * 150
        assert source.relevance_score == 1.0

    def test_empty_candidates_give_empty_context(self):
        assembled = ContextAssembler().assemble([])

        assert assembled.is_empty
        assert assembled.context_block == ""
        assert assembled.sources == []


class TestPromptBuilding:

    def test_prompt_without_context_says_so(self):
        """Test an empty context block is replaced by the no-context sentence."""
        prompt = build_prompt("What happened today?", ContextAssembler().assemble([]))

        assert NO_CONTEXT_TEXT in prompt
        assert "User Question: What happened today?" in prompt

    def test_prompt_keeps_braces_in_query(self, make_candidate):
        """Test user text is inserted literally."""
        prompt = build_prompt("What is {context}?", ContextAssembler().assemble([make_candidate("a", 0.9)]))

        assert "User Question: What is {context}?" in prompt

    def test_history_uses_last_four_messages_truncated(self):
        """Test only recent turns are included and long ones are cut."""
        timestamp = datetime(2025, 9, 17, tzinfo=timezone.utc)
        history = [
            Message(role=MessageRole.USER if i % 2 == 0 else MessageRole.BOT,
                    content=f"message {i} " + ("y" * 600 if i == 5 else ""),
                    timestamp=timestamp)
            for i in range(6)
        ]

        rendered = format_history(history)

        assert "message 0" not in rendered
        assert "message 1" not in rendered
        assert "User: message 2" in rendered
        assert "Assistant: message 5" in rendered
        assert "y" * 600 not in rendered
        assert rendered.rstrip().endswith("...")

    def test_no_history_renders_nothing(self):
        assert format_history([]) == ""
        assert format_history(None) == ""
