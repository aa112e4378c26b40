"""
Gemini image generation client for comic panel creation.

This module wraps Google's Gemini API behind a small provider interface:
generate(prompt, options) -> GeneratedImage. It supports plain text-to-image
and image-to-image transformation of a reference picture.
"""

import base64
import binascii
import logging
import mimetypes
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, Tuple, Union

from google import genai
from google.genai import types

from comic_studio.config import Config, require_api_key


logger = logging.getLogger(__name__)


TEXT_TO_IMAGE = "text-to-image"
IMAGE_TO_IMAGE = "image-to-image"

_DATA_URI = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


class GeminiError(Exception):
    """Gemini API error."""
    pass


class ProviderRequestError(GeminiError):
    """The generation request itself failed."""
    pass


class NoImageProducedError(GeminiError):
    """The request succeeded but the response held no image."""
    pass


@dataclass
class GenerationOptions:
    """Per-request options for the image provider."""

    aspect_ratio: str = "2:3"
    seed: Optional[int] = None
    reference_image: Optional[Union[bytes, str, Path]] = None
    mode: str = TEXT_TO_IMAGE
    strength: float = 0.75  # how far image-to-image may move from the source
    temperature: float = 0.8


@dataclass
class GeneratedImage:
    """Container for a generated image."""

    image_data: bytes
    mime_type: str
    prompt: str
    seed: Optional[int] = None
    file_path: Optional[Path] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def save(self, file_path: Path) -> Path:
        """
        Save image to file.

        Args:
            file_path: Path to save image; an extension is added from the
                mime type when missing

        Returns:
            Path where image was saved
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)

        ext = mimetypes.guess_extension(self.mime_type)
        if not ext or ext == ".jpe":  # Handle .jpe -> .jpg
            ext = ".jpg"
        if not file_path.suffix:
            file_path = file_path.with_suffix(ext)

        file_path.write_bytes(self.image_data)
        self.file_path = file_path

        logger.info(f"Saved image to {file_path}")
        return file_path

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.image_data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def decode_image_reference(reference: Union[bytes, str, Path]) -> Tuple[bytes, str]:
    """
    Resolve an image reference to (bytes, mime type).

    Accepts raw bytes, a base64 data URI or a local file path. Remote URLs
    are not fetched.

    Raises:
        ValueError: If the reference cannot be resolved locally
    """
    if isinstance(reference, bytes):
        return reference, "image/png"

    text = str(reference)
    match = _DATA_URI.match(text)
    if match:
        try:
            data = base64.b64decode(match.group("data"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Malformed data URI: {e}")
        return data, match.group("mime")

    if text.startswith(("http://", "https://")):
        raise ValueError(f"Remote image references are not supported: {text}")

    path = Path(text)
    if not path.is_file():
        raise ValueError(f"Image reference not found: {text}")
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    return path.read_bytes(), mime_type


class GeminiImageProvider:
    """Generates comic panel images using Gemini API."""

    def __init__(self, config: Config):
        """
        Initialize Gemini image provider.

        Args:
            config: Application configuration

        Raises:
            ConfigError: If no API key is configured
        """
        self.config = config
        self.model_name = config.image_model
        self.client: Optional[genai.Client] = None
        self._connect()

    def _connect(self):
        """Connect to Gemini API."""
        api_key = require_api_key(self.config)
        try:
            self.client = genai.Client(api_key=api_key)
            logger.info("Connected to Gemini API")
        except Exception as e:
            raise GeminiError(f"Failed to connect to Gemini: {e}")

    def _build_parts(self, prompt: str, options: GenerationOptions) -> list:
        parts = []

        if options.mode == IMAGE_TO_IMAGE:
            if options.reference_image is None:
                raise ValueError("image-to-image generation needs a reference image")
            data, mime_type = decode_image_reference(options.reference_image)
            parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))
            parts.append(
                types.Part.from_text(
                    text=(
                        "Redraw the attached image as a comic panel. "
                        f"Transformation strength {options.strength:.2f} on a 0-1 scale: "
                        "low keeps the composition and subjects, high allows a "
                        "substantial reinterpretation."
                    )
                )
            )
        elif options.mode != TEXT_TO_IMAGE:
            raise ValueError(f"Unknown generation mode: {options.mode}")

        parts.append(types.Part.from_text(text=prompt))
        return parts

    def _extract_image(self, response) -> Optional[Tuple[bytes, str]]:
        if not response.candidates:
            return None
        content = response.candidates[0].content
        if not content or not content.parts:
            return None
        for part in content.parts:
            if getattr(part, "inline_data", None) and part.inline_data.data:
                mime_type = part.inline_data.mime_type or "image/png"
                return part.inline_data.data, mime_type
        return None

    def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedImage:
        """
        Generate one image.

        Failed requests are retried with exponential backoff up to
        config.max_retries attempts. A response without an image is not
        retried.

        Args:
            prompt: Final text prompt
            options: Generation options

        Returns:
            Generated image

        Raises:
            ProviderRequestError: If every attempt failed
            NoImageProducedError: If the response carried no image
            ValueError: If the options are inconsistent
        """
        options = options or GenerationOptions(aspect_ratio=self.config.aspect_ratio)
        parts = self._build_parts(prompt, options)

        generate_config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            temperature=options.temperature,
            seed=options.seed,
            image_config=types.ImageConfig(aspect_ratio=options.aspect_ratio),
        )

        max_retries = self.config.max_retries
        last_error = None

        for attempt in range(max_retries):
            try:
                logger.info(
                    f"Requesting {options.mode} image (attempt {attempt + 1})"
                )
                response = self.client.models.generate_content(
                    model=self.model_name,
                    contents=[types.Content(role="user", parts=parts)],
                    config=generate_config,
                )
            except Exception as e:
                last_error = e
                logger.warning(f"Generation attempt {attempt + 1} failed: {e}")

                if attempt < max_retries - 1:
                    wait_time = 2 ** attempt
                    logger.info(f"Waiting {wait_time} seconds before retry")
                    time.sleep(wait_time)
                continue

            extracted = self._extract_image(response)
            if extracted is None:
                raise NoImageProducedError("No image generated")

            image_data, mime_type = extracted
            logger.info("Successfully generated image")
            return GeneratedImage(
                image_data=image_data,
                mime_type=mime_type,
                prompt=prompt,
                seed=options.seed,
                metadata={
                    "attempt": attempt + 1,
                    "mode": options.mode,
                    "model": self.model_name,
                },
            )

        raise ProviderRequestError(
            f"Image generation failed after {max_retries} attempts: {last_error}"
        )

    def test_connection(self) -> bool:
        """
        Test connection to Gemini API.

        Returns:
            True if connection successful
        """
        try:
            response = self.client.models.generate_content(
                model=self.model_name,
                contents=[types.Content(
                    role="user",
                    parts=[types.Part.from_text(text="Hello, testing connection")]
                )],
            )
            return response is not None

        except Exception as e:
            logger.error(f"Connection test failed: {e}")
            return False
