"""
Centralized Configuration Management

Loads and validates the bot's configuration. Values come from, in order of
precedence: a TOML file, environment variables, a .env file, and the
defaults below. Each nested section reads its own environment prefix
(MATRIX_, RECONNECT_, RESPONSE_, CHAIN_, STORAGE_).
"""

import json
import re
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from .core.chain import TOKENIZERS
from .core.policy import GLOBAL_SCOPE, KeywordTrigger, PolicyConfig
from .exceptions import ConfigurationError

DEFAULT_NICK = "markovbot"

DEFAULT_CONFIG_PATHS = (
    Path("~/.config/markovbot.toml"),
    Path("/etc/markovbot/markovbot.toml"),
)


class MatrixConfig(BaseSettings):
    """Matrix-specific configuration."""

    model_config = SettingsConfigDict(env_prefix="MATRIX_", env_file=".env", extra="ignore")

    homeserver: Optional[str] = None
    user_id: Optional[str] = None
    password: Optional[str] = None
    nick: Optional[str] = None
    device_name: str = "markovbot"
    store_path: str = "matrix_store"
    sync_timeout_ms: int = 30000
    request_timeout: float = 60.0
    accept_invites: bool = True


class ReconnectConfig(BaseSettings):
    """Reconnection backoff and room reconciliation."""

    model_config = SettingsConfigDict(env_prefix="RECONNECT_", env_file=".env", extra="ignore")

    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=300.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    rejoin_interval: float = Field(default=300.0, ge=0)
    auth_alert_threshold: int = Field(default=5, ge=0)


class KeywordTriggerConfig(BaseModel):
    name: str
    pattern: str
    responses: List[str] = []
    use_jokes: bool = False
    cooldown_seconds: float = Field(default=120.0, ge=0)
    probability: float = Field(default=0.5, ge=0, le=1)


class ResponseConfig(BaseSettings):
    """When and how the bot speaks."""

    model_config = SettingsConfigDict(env_prefix="RESPONSE_", env_file=".env", extra="ignore")

    reply_probability: float = Field(default=0.01, ge=0, le=1)
    # 0 = independent draw per message, >0 = at most one random reply per room per window
    reply_cooldown_seconds: float = Field(default=300.0, ge=0)
    mention_pattern: Optional[str] = None
    repo_url: Optional[str] = None
    jokes_file: Optional[str] = None
    learn_from_direct: bool = False
    # with jokes loaded, this share of random replies is a joke
    random_joke_probability: float = Field(default=0.5, ge=0, le=1)
    keyword_triggers: List[KeywordTriggerConfig] = [
        KeywordTriggerConfig(name="dad", pattern="dad", use_jokes=True, cooldown_seconds=300.0, probability=0.5)
    ]

    @field_validator("mention_pattern")
    @classmethod
    def _valid_mention_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid mention_pattern '{value}': {e}") from e
        return value


class ChainConfig(BaseSettings):
    """Token chain parameters."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", env_file=".env", extra="ignore")

    order: int = Field(default=1, ge=1)
    max_tokens: int = Field(default=50, ge=1)
    tokenizer: str = "whitespace"

    @field_validator("tokenizer")
    @classmethod
    def _known_tokenizer(cls, value: str) -> str:
        if value not in TOKENIZERS:
            raise ValueError(f"unknown tokenizer '{value}', expected one of {sorted(TOKENIZERS)}")
        return value


class StorageConfig(BaseSettings):
    """Corpus database configuration."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", env_file=".env", extra="ignore")

    db_path: str = "data/markovbot.db"
    snapshot_interval: int = Field(default=100, ge=0)


class RoomConfig(BaseModel):
    room: str
    nick: Optional[str] = None
    scopes: List[str] = []


class AppConfig(BaseSettings):
    """
    Application configuration with nested sections.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    rooms: List[RoomConfig] = []
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[str] = None
    worker_count: int = Field(default=2, ge=1)
    queue_size: int = Field(default=100, ge=1)

    # Nested configuration sections
    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    response: ResponseConfig = Field(default_factory=ResponseConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @field_validator("rooms", mode="before")
    @classmethod
    def _rooms_from_strings(cls, value: Any) -> Any:
        # Bare room strings are shorthand for {"room": ...}
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, list):
            return [{"room": item} if isinstance(item, str) else item for item in value]
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    def nick_for(self, room: RoomConfig) -> str:
        """Room nick, else global nick, else user id localpart, else the default."""
        if room.nick:
            return room.nick
        if self.matrix.nick:
            return self.matrix.nick
        localpart = localpart_of(self.matrix.user_id)
        return localpart or DEFAULT_NICK

    @property
    def default_nick(self) -> str:
        return self.matrix.nick or localpart_of(self.matrix.user_id) or DEFAULT_NICK

    def scopes_for(self, room: RoomConfig) -> List[str]:
        """Configured scopes (or the room itself), always ending with the global scope."""
        scopes = list(dict.fromkeys(room.scopes)) or [room.room]
        if GLOBAL_SCOPE not in scopes:
            scopes.append(GLOBAL_SCOPE)
        return scopes

    def policy_config(self, jokes: Tuple[str, ...] = ()) -> PolicyConfig:
        triggers = tuple(
            KeywordTrigger(
                name=t.name,
                pattern=t.pattern,
                responses=tuple(t.responses),
                use_jokes=t.use_jokes,
                cooldown_seconds=t.cooldown_seconds,
                probability=t.probability,
            )
            for t in self.response.keyword_triggers
        )
        return PolicyConfig(
            reply_probability=self.response.reply_probability,
            reply_cooldown_seconds=self.response.reply_cooldown_seconds,
            repo_url=self.response.repo_url,
            jokes=tuple(jokes),
            random_joke_probability=self.response.random_joke_probability,
            keyword_triggers=triggers,
        )


def localpart_of(user_id: Optional[str]) -> Optional[str]:
    """'@bot:example.org' -> 'bot'"""
    if not user_id:
        return None
    localpart = user_id.lstrip("@").split(":", 1)[0]
    return localpart or None


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """The explicit path if given (it must exist), else the first default location present."""
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        return path
    for candidate in DEFAULT_CONFIG_PATHS:
        path = candidate.expanduser()
        if path.is_file():
            return path
    return None


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}") from e


_SECTIONS = {
    "matrix": MatrixConfig,
    "reconnect": ReconnectConfig,
    "response": ResponseConfig,
    "chain": ChainConfig,
    "storage": StorageConfig,
}


def load_settings(config_path: Optional[str] = None) -> AppConfig:
    """Build and validate the configuration.

    Raises ConfigurationError on an unreadable or invalid file, failed
    validation, missing Matrix credentials, or an empty room list.
    """
    path = find_config_file(config_path)
    data = _read_toml(path) if path else {}

    try:
        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = data.pop(name, {})
            if not isinstance(values, dict):
                raise ConfigurationError(f"[{name}] must be a table")
            # Constructing each section here keeps its environment prefix in play
            sections[name] = section_cls(**values)
        config = AppConfig(**data, **sections)
    except (ValidationError, SettingsError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    missing = [
        f"matrix.{field}"
        for field in ("homeserver", "user_id", "password")
        if not getattr(config.matrix, field)
    ]
    if missing:
        raise ConfigurationError(f"Missing Matrix credentials: {', '.join(missing)}")
    if not config.rooms:
        raise ConfigurationError("No rooms configured")
    return config


def load_jokes(jokes_file: Optional[str]) -> Tuple[str, ...]:
    """Read a JSON array of strings. No file configured means no jokes."""
    if not jokes_file:
        return ()
    path = Path(jokes_file).expanduser()
    try:
        with open(path, "r", encoding="utf-8") as f:
            jokes = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read jokes file {path}: {e}") from e
    if not isinstance(jokes, list) or not all(isinstance(joke, str) for joke in jokes):
        raise ConfigurationError(f"Jokes file {path} must contain a JSON array of strings")
    return tuple(joke for joke in jokes if joke.strip())
