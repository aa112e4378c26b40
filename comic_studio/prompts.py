"""
Prompt composition for comic panel generation.

This module holds the style, tone, camera and emotion tables and assembles
the final text sent to the image provider.
"""

import re
from typing import List, Optional


TONES = ("romantic", "funny", "dramatic", "kids")
STYLES = ("western", "manga", "cinematic", "watercolor")

DEFAULT_STYLE = "western"

STYLE_DESCRIPTIONS = {
    "western": (
        "western comic book style, bold ink lines, dynamic shading, "
        "superhero comic aesthetic, vibrant colors"
    ),
    "manga": (
        "manga style, clean linework, expressive anime eyes, "
        "Japanese comic aesthetic, screentones"
    ),
    "cinematic": (
        "cinematic comic style, dramatic lighting, film noir influences, "
        "detailed backgrounds, moody atmosphere"
    ),
    "watercolor": (
        "watercolor comic style, soft edges, painterly textures, "
        "artistic brush strokes, delicate colors"
    ),
}

TONE_DESCRIPTIONS = {
    "romantic": "warm colors, soft lighting, intimate atmosphere, tender mood",
    "funny": "exaggerated expressions, vibrant colors, comedic timing, playful",
    "dramatic": "high contrast, intense shadows, emotional depth, serious",
    "kids": "bright cheerful colors, simple friendly shapes, cute characters, wholesome",
}

CAMERA_ANGLES = [
    "close-up",
    "medium shot",
    "wide shot",
    "over-the-shoulder",
    "dramatic angle",
    "birds-eye",
]

# Randomly assigned to generated panels; "neutral" is reserved for
# manually added ones
GENERATED_EMOTIONS = [
    "happy",
    "sad",
    "angry",
    "surprised",
    "thoughtful",
    "scared",
    "romantic",
]
EMOTIONS = GENERATED_EMOTIONS + ["neutral"]

PROMPT_PREFIX = "Comic book panel illustration, "
PROMPT_SUFFIX = ", professional comic art, high quality, detailed"

_CAMERA_PATTERN = re.compile(
    r"close-up|medium shot|wide shot|over-the-shoulder|dramatic angle|birds[- ]eye",
    re.IGNORECASE,
)


def style_description(style: str) -> str:
    return STYLE_DESCRIPTIONS.get(style, STYLE_DESCRIPTIONS[DEFAULT_STYLE])


def tone_description(tone: str) -> str:
    return TONE_DESCRIPTIONS.get(tone, "")


def compose_prompt(
    style: str,
    tone: str,
    scene_text: str,
    extra_modifiers: Optional[List[str]] = None,
) -> str:
    """
    Build the generation prompt for one panel.

    Unknown styles fall back to the western description and unknown tones
    contribute an empty description.

    Args:
        style: Art style key
        tone: Tone key
        scene_text: Story chunk the panel illustrates
        extra_modifiers: Optional phrases appended after the scene text

    Returns:
        Prompt string for the image provider
    """
    scene = scene_text
    if extra_modifiers:
        scene = ", ".join([scene_text] + list(extra_modifiers))

    return (
        f"{PROMPT_PREFIX}{style_description(style)}, "
        f"{tone_description(tone)}, {scene}{PROMPT_SUFFIX}"
    )


def apply_camera_angle(prompt: str, angle: str) -> str:
    """Replace every camera-angle phrase in prompt with angle."""
    return _CAMERA_PATTERN.sub(angle, prompt)


def add_expression(prompt: str, expression: str) -> str:
    """Append a facial expression hint to prompt."""
    return f"{prompt}, {expression.lower()} expression"
