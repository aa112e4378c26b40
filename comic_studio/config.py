"""
Configuration management for Comic Studio.

Handles environment variables and application settings.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration."""

    # API Keys
    gemini_api_key: str = ""

    # Image provider settings
    image_model: str = "gemini-2.5-flash-image"
    aspect_ratio: str = "2:3"

    # Storage
    state_file: Path = Path("data/comic_studio.json")
    image_dir: Optional[Path] = None

    # Credits granted to a fresh store
    starting_credits: int = 100

    # Random seed for camera/emotion/seed selection
    seed: Optional[int] = None

    # Output settings
    output_dir: Path = Path("output")

    # Runtime settings
    max_retries: int = 3

    # Debug settings
    debug: bool = False


class ConfigError(Exception):
    """Configuration error."""
    pass


SUPPORTED_ASPECT_RATIOS = (
    "1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9",
)


def _int_from_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def load_config(env_file: Optional[str] = None) -> Config:
    """
    Load configuration from environment variables.

    The Gemini key is optional here so that store-only operations work
    without credentials; provider-backed operations call require_api_key.

    Args:
        env_file: Optional path to .env file

    Returns:
        Config object with validated settings

    Raises:
        ConfigError: If a setting is malformed or out of range
    """
    # Load environment variables from .env file
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    gemini_api_key = os.getenv("GEMINI_API_KEY", "")

    image_model = os.getenv("GEMINI_IMAGE_MODEL") or Config.image_model
    aspect_ratio = os.getenv("ASPECT_RATIO") or Config.aspect_ratio
    if aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        raise ConfigError(
            f"ASPECT_RATIO must be one of {', '.join(SUPPORTED_ASPECT_RATIOS)}"
        )

    # Storage
    state_file = Path(os.getenv("STATE_FILE", "data/comic_studio.json"))
    image_dir_str = os.getenv("IMAGE_DIR")
    image_dir = Path(image_dir_str) if image_dir_str else None

    starting_credits = _int_from_env("STARTING_CREDITS", "100")
    if starting_credits < 0:
        raise ConfigError("STARTING_CREDITS must not be negative")

    # Random seed
    seed_str = os.getenv("SEED")
    seed = _int_from_env("SEED", "0") if seed_str else None

    # Output directory
    output_dir = Path(os.getenv("OUTPUT_DIR", "output"))

    max_retries = _int_from_env("MAX_RETRIES", "3")
    if max_retries < 1 or max_retries > 10:
        raise ConfigError("MAX_RETRIES must be between 1 and 10")

    debug = os.getenv("DEBUG", "false").lower() == "true"

    return Config(
        gemini_api_key=gemini_api_key,
        image_model=image_model,
        aspect_ratio=aspect_ratio,
        state_file=state_file,
        image_dir=image_dir,
        starting_credits=starting_credits,
        seed=seed,
        output_dir=output_dir,
        max_retries=max_retries,
        debug=debug,
    )


def require_api_key(config: Config) -> str:
    """
    Return the Gemini API key or fail before any work is done.

    Raises:
        ConfigError: If GEMINI_API_KEY is not configured
    """
    if not config.gemini_api_key:
        raise ConfigError(
            "GEMINI_API_KEY environment variable is required. "
            "Get your API key from: https://ai.google.dev/"
        )
    return config.gemini_api_key


def validate_config(config: Config) -> None:
    """
    Validate configuration values and prepare directories.

    Args:
        config: Configuration object to validate

    Raises:
        ConfigError: If configuration is invalid
    """
    if config.starting_credits < 0:
        raise ConfigError("starting_credits must not be negative")
    if config.aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        raise ConfigError(f"Unsupported aspect ratio: {config.aspect_ratio}")

    # Ensure output directories exist
    config.output_dir.mkdir(parents=True, exist_ok=True)
    config.state_file.parent.mkdir(parents=True, exist_ok=True)
    if config.image_dir is not None:
        config.image_dir.mkdir(parents=True, exist_ok=True)
