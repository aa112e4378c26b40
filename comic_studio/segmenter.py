"""
Story segmentation.

Splits story prose into per-panel scene chunks and pulls quoted dialogue out
of a chunk. Both functions accept any string and never raise on content.
"""

import math
import re
from typing import List


SENTENCE_BREAK = re.compile(r"[.!?]+")
QUOTED = re.compile(r'"[^"]+"')

MAX_DIALOGUE_LINES = 2


def split_sentences(story: str) -> List[str]:
    """Split on runs of terminal punctuation, dropping blank fragments."""
    return [s.strip() for s in SENTENCE_BREAK.split(story) if s.strip()]


def segment_story(story: str, part_count: int) -> List[str]:
    """
    Split a story into exactly part_count scene chunks.

    Sentences are dealt into contiguous windows of ceil(n / part_count);
    trailing windows may be short or empty. An empty window becomes the
    placeholder "Scene N" (1-based).

    Args:
        story: Raw story text
        part_count: Number of chunks wanted, at least 1

    Returns:
        List of part_count chunk strings
    """
    if part_count < 1:
        raise ValueError("part_count must be a positive integer")

    sentences = split_sentences(story)
    chunk_size = math.ceil(len(sentences) / part_count)

    chunks = []
    for i in range(part_count):
        window = sentences[i * chunk_size:(i + 1) * chunk_size]
        chunks.append(". ".join(window) or f"Scene {i + 1}")
    return chunks


def extract_dialogue(text: str) -> List[str]:
    """
    Return up to two double-quoted lines from text, in order.

    Escaped quotes, single quotes and dialogue spanning paragraphs are not
    recognised.
    """
    matches = QUOTED.findall(text)
    return [m.strip('"') for m in matches[:MAX_DIALOGUE_LINES]]
