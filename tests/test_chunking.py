"""
Unit tests for knowledge_engine.chunking

Covers every strategy, the dispatcher fallbacks and the provider
requirement of the semantic strategy.
"""

from __future__ import annotations

import re

import pytest

from knowledge_engine.chunking import (
    PURE_STRATEGIES,
    ChunkOptions,
    chunk,
    requires_provider,
    resolve_strategy,
    split_sentences,
)
from knowledge_engine.errors import ProviderUnavailableError

ANIMALS = "Cats are mammals. Dogs are mammals too. The sky is blue."


# ---------------------------------------------------------------------------
# Tests: sentence splitting
# ---------------------------------------------------------------------------

class TestSplitSentences:
    def test_splits_on_terminal_punctuation_before_uppercase(self):
        assert split_sentences(ANIMALS) == [
            "Cats are mammals.", "Dogs are mammals too.", "The sky is blue.",
        ]

    def test_lowercase_continuation_is_not_a_boundary(self):
        assert split_sentences("Version 1.2 is out. see notes.") == [
            "Version 1.2 is out. see notes.",
        ]

    def test_newlines_are_boundaries(self):
        assert split_sentences("first line\nsecond line\n\n") == ["first line", "second line"]


# ---------------------------------------------------------------------------
# Tests: fixed / sliding
# ---------------------------------------------------------------------------

class TestFixed:
    def test_thousand_chars_window_400_overlap_100(self):
        text = "abcdefghij" * 100
        chunks = chunk(text, "fixed", {"chunkSize": 400, "overlap": 100})
        assert [c.char_start for c in chunks] == [0, 300, 600]
        assert all(len(c.text) <= 400 for c in chunks)
        assert len(chunks[-1].text) == 400

    def test_zero_overlap_partitions_text(self):
        text = "x" * 1234
        chunks = chunk(text, "fixed", ChunkOptions(chunk_size=100, overlap=0))
        assert "".join(c.text for c in chunks) == text
        assert len(chunks) == 13
        assert len(chunks[-1].text) == 34

    def test_short_text_is_one_chunk(self):
        chunks = chunk("short", "fixed")
        assert len(chunks) == 1
        assert chunks[0].text == "short"

    def test_overlap_not_smaller_than_window_rejected(self):
        with pytest.raises(ValueError):
            chunk("x" * 100, "fixed", ChunkOptions(chunk_size=50, overlap=50))


class TestSliding:
    def test_stride_equal_to_window_partitions_text(self):
        text = "0123456789" * 25
        chunks = chunk(text, "sliding", {"window_size": 100, "step_size": 100})
        assert "".join(c.text for c in chunks) == text
        assert [c.char_start for c in chunks] == [0, 100, 200]

    def test_windows_overlap_and_reach_the_end(self):
        text = "y" * 1000
        chunks = chunk(text, "sliding")
        assert [c.char_start for c in chunks] == [0, 256, 512]
        assert chunks[-1].char_end == len(text)
        assert all(len(c.text) <= 512 for c in chunks)


# ---------------------------------------------------------------------------
# Tests: sentence / paragraph
# ---------------------------------------------------------------------------

class TestSentence:
    def test_groups_of_two(self):
        chunks = chunk(ANIMALS, "sentence", {"maxChunkSentences": 2})
        assert [c.text for c in chunks] == [
            "Cats are mammals. Dogs are mammals too.",
            "The sky is blue.",
        ]
        assert chunks[1].sentence_start == 2

    def test_default_group_size_is_three(self):
        chunks = chunk(ANIMALS, "sentence")
        assert len(chunks) == 1


class TestParagraph:
    def test_short_paragraphs_are_merged(self):
        chunks = chunk("A.\n\nB.\n\nC.", "paragraph")
        assert len(chunks) == 1
        assert chunks[0].text == "A.\n\nB.\n\nC."

    def test_long_paragraphs_stay_separate(self):
        paras = [c * 60 for c in "abc"]
        chunks = chunk("\n\n".join(paras), "paragraph")
        assert [c.text for c in chunks] == paras

    def test_merge_stops_at_merge_limit(self):
        opts = ChunkOptions(min_paragraph_length=10, paragraph_merge_factor=2)
        chunks = chunk("tiny\n\n" + "z" * 30, "paragraph", opts)
        assert [c.text for c in chunks] == ["tiny", "z" * 30]

    def test_whitespace_only_input_yields_nothing(self):
        assert chunk("   \n\n \t \n\n", "paragraph") == []


# ---------------------------------------------------------------------------
# Tests: recursive
# ---------------------------------------------------------------------------

class TestRecursive:
    def test_small_sections_kept_whole_with_heading_prefix(self):
        text = "# Intro\nShort intro.\n\n# Details\nMore details here."
        chunks = chunk(text, "recursive")
        assert [c.text for c in chunks] == ["Intro: Short intro.", "Details: More details here."]
        assert [c.level for c in chunks] == ["section", "section"]
        assert chunks[1].heading == "Details"

    def test_oversized_section_descends_to_paragraphs(self):
        text = "## Notes\n" + "a" * 40 + "\n\n" + "b" * 40
        chunks = chunk(text, "recursive", {"max_chunk_size": 50})
        assert [c.level for c in chunks] == ["paragraph", "paragraph"]
        assert chunks[0].text == "Notes: " + "a" * 40

    def test_oversized_paragraph_descends_to_sentences(self):
        text = "Alpha beta gamma. Delta epsilon zeta. Eta theta iota."
        chunks = chunk(text, "recursive", {"max_chunk_size": 20})
        assert all(c.level == "sentence" for c in chunks)
        assert [c.text for c in chunks] == [
            "Alpha beta gamma.", "Delta epsilon zeta.", "Eta theta iota.",
        ]
        assert all(c.heading is None for c in chunks)


# ---------------------------------------------------------------------------
# Tests: semantic
# ---------------------------------------------------------------------------

class TestSemantic:
    def test_requires_provider(self):
        assert requires_provider("semantic")
        assert not any(requires_provider(name) for name in PURE_STRATEGIES)
        with pytest.raises(ProviderUnavailableError):
            chunk("One sentence. Another sentence.", "semantic")

    def test_single_sentence_skips_provider(self, provider):
        chunks = chunk("Only one sentence here.", "semantic", provider=provider)
        assert len(chunks) == 1
        assert provider.calls == []

    def test_similar_neighbours_stay_together(self, provider):
        text = "Cats purr softly. Cats purr softly."
        chunks = chunk(text, "semantic", provider=provider)
        assert [c.text for c in chunks] == [text]

    def test_dissimilar_neighbours_are_split(self, provider):
        text = "Cats purr softly. Rockets launch quickly."
        chunks = chunk(text, "semantic", {"threshold": 0.99}, provider=provider)
        assert [c.text for c in chunks] == ["Cats purr softly.", "Rockets launch quickly."]
        assert chunks[0].similarity_break < 0.99


# ---------------------------------------------------------------------------
# Tests: dispatcher
# ---------------------------------------------------------------------------

class TestDispatcher:
    @pytest.mark.parametrize("strategy", sorted(PURE_STRATEGIES))
    def test_indices_are_contiguous(self, strategy):
        text = "\n\n".join(
            f"Paragraph {i}. It has Two sentences and some padding text." * 3
            for i in range(6)
        )
        chunks = chunk(text, strategy)
        assert chunks
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert all(c.text.strip() for c in chunks)

    def test_unknown_strategy_falls_back_to_paragraph(self):
        assert resolve_strategy("nonsense") == "paragraph"
        chunks = chunk("Some text.", "nonsense")
        assert chunks[0].strategy == "paragraph"

    def test_empty_text_yields_nothing(self):
        assert chunk("", "fixed") == []

    def test_unknown_option_is_ignored(self):
        opts = ChunkOptions.from_dict({"bogus": 1, "chunk_size": 10})
        assert opts.chunk_size == 10


# ---------------------------------------------------------------------------
# Tests: coverage of the input text
# ---------------------------------------------------------------------------

def _words(text: str) -> list[str]:
    return re.findall(r"\w+", text)


PROSE = "\n\n".join([
    "Cats are mammals. Dogs are mammals too. The sky is blue.",
    "Short one.",
    "Rivers run to the sea. The sea is salty! Is the rain fresh? It is.",
    "Trains leave at noon. Buses leave at one. Ferries leave when the tide turns.",
])


class TestCoverage:
    @pytest.mark.parametrize("strategy, options", [
        ("sentence", {"sentences_per_chunk": 2}),
        ("paragraph", {}),
        ("paragraph", {"min_paragraph_length": 10}),
        ("recursive", {"max_chunk_size": 40}),
        ("recursive", {}),
    ])
    def test_chunks_cover_every_word_in_order(self, strategy, options):
        chunks = chunk(PROSE, strategy, options)
        joined = " ".join(c.text for c in chunks)
        assert _words(joined) == _words(PROSE)

    def test_recursive_with_headings_covers_every_word(self):
        text = "# Intro\n" + PROSE + "\n\n## Outro\nThat is all. Goodbye now."
        chunks = chunk(text, "recursive", {"max_chunk_size": 60})
        assert set(_words(" ".join(c.text for c in chunks))) == set(_words(text))
