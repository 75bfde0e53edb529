"""Configuration management for tidytalk."""

import json
import logging
from dataclasses import dataclass, asdict, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


CONFIG_DIR = Path.home() / ".config" / "tidytalk"
CONFIG_FILE = CONFIG_DIR / "config.json"
DATA_DIR = Path.home() / ".local" / "share" / "tidytalk"

# Discourse markers that open a new paragraph when they follow a sentence
# terminator. Multi-word markers must come before their prefixes.
DEFAULT_DISCOURSE_MARKERS: Tuple[str, ...] = (
    "moving on",
    "okay",
    "next",
    "now",
    "so",
)

VALIDATION_POLICIES = ("strict", "ratio")
TRANSCRIBER_BACKENDS = ("faster-whisper", "whisper.cpp")


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or is invalid."""
    pass


@dataclass
class FormattingOptions:
    """Options for the rule-based formatter.

    ``sentence_casing``, ``spoken_commands`` and ``cleanup`` each switch one
    formatter pass on or off; the passes still run in their fixed order.
    """

    sentence_casing: bool = True
    spoken_commands: bool = True
    cleanup: bool = True
    length_breaks: bool = True
    paragraph_breaks: bool = True

    # Longest run of characters without a terminator before a break is forced
    max_sentence_chars: int = 140
    discourse_markers: Tuple[str, ...] = DEFAULT_DISCOURSE_MARKERS

    # Ordered [phrase, replacement] pairs; None keeps the built-in table
    command_rules: Optional[List[Tuple[str, str]]] = None

    def __post_init__(self):
        self.discourse_markers = tuple(self.discourse_markers)
        if self.command_rules is not None:
            self.command_rules = [tuple(rule) for rule in self.command_rules]
        if self.max_sentence_chars <= 0:
            raise ConfigError(
                f"max_sentence_chars must be positive, got {self.max_sentence_chars}"
            )


@dataclass
class RefinementConfig:
    """Settings for the LLM refinement stage and its local server."""

    enabled: bool = True
    base_url: str = "http://127.0.0.1:8089/v1"
    model: str = "local"
    timeout: float = 2.5  # seconds; tuned for CPU-only inference
    temperature: float = 0.1
    top_p: float = 1.0
    max_tokens: int = 2048

    # Send the rule-based candidate to the model as a structural hint
    include_hint: bool = True

    # "strict": word-sequence equality, "ratio": word-count drift tolerance
    validation_policy: str = "strict"
    ratio_tolerance: float = 0.4

    # None uses the built-in instruction
    system_prompt: Optional[str] = None

    def __post_init__(self):
        if self.validation_policy not in VALIDATION_POLICIES:
            raise ConfigError(
                f"Unknown validation policy '{self.validation_policy}', "
                f"expected one of {', '.join(VALIDATION_POLICIES)}"
            )
        if self.timeout <= 0:
            raise ConfigError(f"Refinement timeout must be positive, got {self.timeout}")


@dataclass
class TranscriberConfig:
    """Speech-to-text backend settings."""

    backend: str = "faster-whisper"
    model_size: str = "base"
    language: Optional[str] = "en"

    # whisper.cpp only
    cli_path: Optional[str] = None
    model_path: Optional[str] = None

    timeout: float = 120.0

    def __post_init__(self):
        if self.backend not in TRANSCRIBER_BACKENDS:
            raise ConfigError(
                f"Unknown transcriber backend '{self.backend}', "
                f"expected one of {', '.join(TRANSCRIBER_BACKENDS)}"
            )


@dataclass
class AppConfig:
    """Application configuration."""

    formatting: FormattingOptions = field(default_factory=FormattingOptions)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    transcriber: TranscriberConfig = field(default_factory=TranscriberConfig)

    data_dir: str = str(DATA_DIR)
    copy_to_clipboard: bool = True
    log_level: str = "INFO"

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / "app.db"

    @property
    def log_path(self) -> Path:
        return Path(self.data_dir) / "debug.log"

    @property
    def recordings_dir(self) -> Path:
        return Path(self.data_dir) / "recordings"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _filter_known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are fields of ``cls`` so old files still load."""
    known_fields = {f.name for f in fields(cls)}
    unknown = set(data) - known_fields
    if unknown:
        logger.debug(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in data.items() if k in known_fields}


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    """Build an AppConfig from a (possibly partial) dictionary."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a JSON object")

    sections = {
        "formatting": FormattingOptions,
        "refinement": RefinementConfig,
        "transcriber": TranscriberConfig,
    }
    kwargs = _filter_known(AppConfig, data)
    try:
        for name, cls in sections.items():
            section = kwargs.get(name) or {}
            if not isinstance(section, dict):
                raise ConfigError(f"Section '{name}' must be a JSON object")
            kwargs[name] = cls(**_filter_known(cls, section))
        return AppConfig(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load configuration from disk, or return defaults if no file exists."""
    config_path = Path(path) if path else CONFIG_FILE

    if not config_path.exists():
        logger.debug(f"No config file at {config_path}, using defaults")
        return AppConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {config_path}: {e}") from e

    config = config_from_dict(data)
    logger.debug(f"Loaded config from {config_path}")
    return config


def save_config(config: AppConfig, path: Optional[Union[str, Path]] = None) -> Path:
    """Save configuration to disk and return the path written."""
    config_path = Path(path) if path else CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)

    return config_path
