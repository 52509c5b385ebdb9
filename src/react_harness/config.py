# config.py
# Runtime settings, read from the environment (and a .env file if present).
# Also owns logging setup; nothing else in the package configures handlers.

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from rich.logging import RichHandler

from react_harness.models import RetryPolicy, SafetyPolicy

DEFAULT_DANGEROUS_PATTERNS = (
    "rm -rf",
    "sudo",
    "chmod",
    "chown",
    "mkfs",
    "dd",
    "> /dev/",
    "> /proc/",
    "> /sys/",
)


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _patterns(value: str | None) -> list[str]:
    if value is None:
        return list(DEFAULT_DANGEROUS_PATTERNS)
    return [pattern.strip() for pattern in value.split(",") if pattern.strip()]


class Settings(BaseModel):
    model: str = "anthropic/claude-3.5-haiku"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""

    max_iterations: int = Field(default=10, ge=0)
    max_steps: int = Field(default=50, ge=1)
    envelope: str = "xml"
    user_input_timeout: float = Field(default=30.0, gt=0, description="Seconds.")

    require_confirmation: bool = True
    require_feedback: bool = False
    max_input_length: int = Field(default=8192, gt=0)
    dangerous_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_DANGEROUS_PATTERNS))

    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=5.0, ge=0)

    memory_max_age_ms: int = Field(default=24 * 60 * 60 * 1000, gt=0)
    memory_max_entries: int = Field(default=10, ge=0)
    checkpoint_dir: Path | None = None

    feedback_sentinel: str = "ERROR"
    sentinel_aborts: bool = False
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build Settings from ``REACT_*`` variables; unset ones keep their defaults."""
        load_dotenv()
        env = os.getenv
        defaults = cls()
        checkpoint_dir = env("REACT_CHECKPOINT_DIR")

        return cls(
            model=env("REACT_MODEL", defaults.model),
            base_url=env("REACT_BASE_URL", defaults.base_url),
            api_key=env("OPENROUTER_API_KEY", ""),
            max_iterations=int(env("REACT_MAX_ITERATIONS", defaults.max_iterations)),
            max_steps=int(env("REACT_MAX_STEPS", defaults.max_steps)),
            envelope=env("REACT_ENVELOPE", defaults.envelope),
            user_input_timeout=float(env("REACT_USER_INPUT_TIMEOUT", defaults.user_input_timeout)),
            require_confirmation=_flag(env("REACT_REQUIRE_CONFIRMATION"), defaults.require_confirmation),
            require_feedback=_flag(env("REACT_REQUIRE_FEEDBACK"), defaults.require_feedback),
            max_input_length=int(env("REACT_MAX_INPUT_LENGTH", defaults.max_input_length)),
            dangerous_patterns=_patterns(env("REACT_DANGEROUS_PATTERNS")),
            retry_initial_delay=float(env("REACT_RETRY_INITIAL_DELAY", defaults.retry_initial_delay)),
            retry_max_delay=float(env("REACT_RETRY_MAX_DELAY", defaults.retry_max_delay)),
            memory_max_age_ms=int(env("REACT_MEMORY_MAX_AGE_MS", defaults.memory_max_age_ms)),
            memory_max_entries=int(env("REACT_MEMORY_MAX_ENTRIES", defaults.memory_max_entries)),
            checkpoint_dir=Path(checkpoint_dir) if checkpoint_dir else None,
            feedback_sentinel=env("REACT_FEEDBACK_SENTINEL", defaults.feedback_sentinel),
            sentinel_aborts=_flag(env("REACT_SENTINEL_ABORTS"), defaults.sentinel_aborts),
            log_level=env("REACT_LOG_LEVEL", defaults.log_level),
        )

    def safety_policy(self) -> SafetyPolicy:
        return SafetyPolicy(
            max_input_length=self.max_input_length,
            dangerous_patterns=frozenset(self.dangerous_patterns),
            require_confirmation=self.require_confirmation,
            require_feedback=self.require_feedback,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(initial_delay=self.retry_initial_delay, max_delay=self.retry_max_delay)

    def build_loop(self, tools, model=None, human_input=None):
        """Wire an AgentLoop from these settings."""
        # Imported here: harness pulls in the OpenAI client.
        from react_harness.harness import AgentLoop, OpenAIChatModel
        from react_harness.interaction import ConsoleInput, InteractionCoordinator
        from react_harness.memory import FileCheckpointStore, InMemoryCheckpointStore, MemoryStore
        from react_harness.parser import get_codec

        store = FileCheckpointStore(self.checkpoint_dir) if self.checkpoint_dir else InMemoryCheckpointStore()
        interaction = InteractionCoordinator(
            human_input if human_input is not None else ConsoleInput(),
            timeout=self.user_input_timeout,
            feedback_sentinel=self.feedback_sentinel,
        )
        return AgentLoop(
            model=model or OpenAIChatModel(self.model, base_url=self.base_url, api_key=self.api_key or None),
            tools=tools,
            policy=self.safety_policy(),
            memory=MemoryStore(
                store, max_age_ms=self.memory_max_age_ms, max_entries=self.memory_max_entries
            ),
            interaction=interaction,
            codec=get_codec(self.envelope),
            retry=self.retry_policy(),
            max_iterations=self.max_iterations,
            max_steps=self.max_steps,
            sentinel_aborts=self.sentinel_aborts,
        )


def configure_logging(level: str | int = "WARNING") -> None:
    """Route package logs through rich; safe to call more than once."""
    logging.basicConfig(
        level=level.upper() if isinstance(level, str) else level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
