"""
Tests for story segmentation and dialogue extraction.
"""

import pytest

from comic_studio.segmenter import extract_dialogue, segment_story, split_sentences


class TestSplitSentences:
    """Test sentence splitting."""

    def test_repeated_punctuation(self):
        """Test runs of terminal punctuation count as one break."""
        assert split_sentences("Wait... What?! Go!") == ["Wait", "What", "Go"]

    def test_whitespace_fragments_dropped(self):
        """Test blank fragments never reach the output."""
        assert split_sentences("  A.   .  B!  ") == ["A", "B"]


class TestSegmentStory:
    """Test story segmentation."""

    def test_empty_story(self):
        """Test empty story degenerates to placeholders."""
        assert segment_story("", 3) == ["Scene 1", "Scene 2", "Scene 3"]

    def test_single_chunk(self):
        """Test a single chunk holds every sentence."""
        assert segment_story("A. B. C.", 1) == ["A. B. C"]

    def test_even_split(self):
        """Test sentences are dealt into contiguous windows."""
        story = "One. Two. Three. Four. Five. Six."
        assert segment_story(story, 3) == ["One. Two", "Three. Four", "Five. Six"]

    def test_uneven_split_leaves_short_last_window(self):
        """Test the last window may be shorter."""
        story = "One. Two. Three. Four. Five."
        assert segment_story(story, 3) == ["One. Two", "Three. Four", "Five"]

    def test_more_parts_than_sentences(self):
        """Test placeholders fill windows with no sentences."""
        assert segment_story("Only one sentence here!", 3) == [
            "Only one sentence here",
            "Scene 2",
            "Scene 3",
        ]

    def test_trailing_empty_windows_after_ceil(self):
        """Test ceil sizing can leave a late window empty."""
        story = "A. B. C. D. E."
        # chunk size ceil(5/4) = 2 -> [A B] [C D] [E] []
        assert segment_story(story, 4) == ["A. B", "C. D", "E", "Scene 4"]

    def test_whitespace_only_story(self):
        """Test whitespace only story is treated as empty."""
        assert segment_story("   \n\t ", 2) == ["Scene 1", "Scene 2"]

    def test_unicode_story(self):
        """Test non-ASCII text passes through untouched."""
        assert segment_story("Café au lait! Ça va? 日本語です.", 1) == [
            "Café au lait. Ça va. 日本語です"
        ]

    def test_invalid_part_count(self):
        """Test part count must be positive."""
        with pytest.raises(ValueError):
            segment_story("A. B.", 0)


@pytest.mark.parametrize("part_count", [1, 2, 3, 5, 6, 10])
@pytest.mark.parametrize(
    "story",
    [
        "",
        "No punctuation at all",
        "A. B. C.",
        "She ran! He followed? They stopped... " * 20,
        "....!!!???",
    ],
)
def test_segment_returns_exact_part_count(story, part_count):
    """Test output length always equals part count."""
    chunks = segment_story(story, part_count)
    assert len(chunks) == part_count
    assert all(chunk == chunk.strip() and chunk for chunk in chunks)


class TestExtractDialogue:
    """Test quoted dialogue extraction."""

    def test_first_two_only(self):
        """Test only the first two quotes are kept."""
        assert extract_dialogue('He said "hi" and "bye" and "no"') == ["hi", "bye"]

    def test_no_quotes(self):
        """Test text without quotes yields nothing."""
        assert extract_dialogue("no quotes here") == []

    def test_single_quote_pair(self):
        """Test a single quoted line."""
        assert extract_dialogue('Mia shouted "Run" at the dog') == ["Run"]

    def test_empty_quotes_ignored(self):
        """Test empty quoted strings are not dialogue."""
        assert extract_dialogue('"" and nothing else') == []

    def test_unbalanced_quote(self):
        """Test a lone quote character is ignored."""
        assert extract_dialogue('She said "wait') == []

    def test_single_quotes_not_recognised(self):
        """Test single-quoted text is a known limitation."""
        assert extract_dialogue("He said 'hello'") == []
