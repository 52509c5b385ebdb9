# memory.py
# Checkpointed conversation memory.
#
# Persistence is best-effort: a failing store is logged and the loop carries
# on with an empty history. A checkpoint is written once per invocation and
# replaces the previous one for the same key; snapshots are never merged.

import json
import logging
import os
import re
import tempfile
import threading
from collections import defaultdict
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from react_harness.errors import PersistenceError
from react_harness.models import (
    SCHEMA_VERSION,
    Checkpoint,
    ConversationState,
    Message,
    Status,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "react_agent"
DEFAULT_MAX_AGE_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_ENTRIES = 10


# ---------------------------------------------------------------------------
# Store collaborators
# ---------------------------------------------------------------------------


class CheckpointStore(Protocol):
    """Stores raise PersistenceError when the backend fails."""

    def put(self, namespace: str, snapshot: str, metadata: dict) -> None: ...

    def get(self, namespace: str) -> str | None: ...


class KeyLocks:
    """One lock per key so writes to the same key never interleave."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks[key]


class InMemoryCheckpointStore:
    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, dict]] = {}
        self._locks = KeyLocks()

    def put(self, namespace: str, snapshot: str, metadata: dict) -> None:
        with self._locks(namespace):
            self._entries[namespace] = (snapshot, dict(metadata))

    def get(self, namespace: str) -> str | None:
        with self._locks(namespace):
            entry = self._entries.get(namespace)
        return entry[0] if entry else None

    def metadata(self, namespace: str) -> dict | None:
        with self._locks(namespace):
            entry = self._entries.get(namespace)
        return dict(entry[1]) if entry else None


class FileCheckpointStore:
    """
    One JSON file per key under ``directory``.

    Writes go to a temporary file that is then renamed over the target, so a
    crash mid-write leaves the previous checkpoint intact.
    """

    def __init__(self, directory: str | os.PathLike) -> None:
        self._directory = Path(directory)
        self._locks = KeyLocks()

    def _path(self, namespace: str) -> Path:
        return self._directory / (re.sub(r"[^\w.-]", "_", namespace) + ".json")

    def put(self, namespace: str, snapshot: str, metadata: dict) -> None:
        path = self._path(namespace)
        with self._locks(namespace):
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".ckpt-", suffix=".tmp")
            except OSError as exc:
                raise PersistenceError(f"Cannot write checkpoint {path}: {exc}") from exc
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump({"snapshot": snapshot, "metadata": metadata}, fh, ensure_ascii=False)
                os.replace(tmp_name, path)
            except OSError as exc:
                Path(tmp_name).unlink(missing_ok=True)
                raise PersistenceError(f"Cannot write checkpoint {path}: {exc}") from exc
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def get(self, namespace: str) -> str | None:
        path = self._path(namespace)
        with self._locks(namespace):
            if not path.exists():
                return None
            try:
                with path.open(encoding="utf-8") as fh:
                    return json.load(fh)["snapshot"]
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise PersistenceError(f"Cannot read checkpoint {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


def prune(
    messages: Sequence[Message],
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    now: int | None = None,
) -> list[Message]:
    """Drop messages older than ``max_age_ms``, then keep the newest ``max_entries``."""
    now = now_ms() if now is None else now
    recent = [message for message in messages if now - message.timestamp < max_age_ms]
    if max_entries <= 0:
        return []
    return recent[-max_entries:]


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class MemoryStore:
    """Loads, saves and trims the checkpointed history of conversation threads."""

    def __init__(
        self,
        store: CheckpointStore | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._store = store if store is not None else InMemoryCheckpointStore()
        self.namespace = namespace
        self.max_age_ms = max_age_ms
        self.max_entries = max_entries

    def key(self, thread_id: str) -> str:
        return f"{self.namespace}/{thread_id}"

    def load(self, thread_id: str) -> ConversationState:
        """Last saved state for ``thread_id``, or a fresh one. Never raises."""
        fresh = ConversationState(thread_id=thread_id)
        try:
            raw = self._store.get(self.key(thread_id))
            if raw is None:
                return fresh
            try:
                checkpoint = Checkpoint.model_validate_json(raw)
                if checkpoint.schema_version != SCHEMA_VERSION:
                    logger.warning(
                        "Ignoring checkpoint for %s with schema version %s",
                        thread_id,
                        checkpoint.schema_version,
                    )
                    return fresh
                return ConversationState.model_validate_json(checkpoint.snapshot)
            except ValidationError as exc:
                raise PersistenceError(f"Corrupt checkpoint: {exc.error_count()} validation errors") from exc
        except PersistenceError as exc:
            logger.warning("Error loading checkpoint for thread %s: %s", thread_id, exc)
            return fresh
        except Exception:
            logger.exception("Error loading checkpoint for thread %s", thread_id)
            return fresh

    def save(self, thread_id: str, state: ConversationState) -> bool:
        """Write a checkpoint. Failures are logged and reported as False."""
        checkpoint = Checkpoint(
            thread_id=thread_id,
            namespace=self.namespace,
            snapshot=state.model_dump_json(),
        )
        metadata = {"source": "loop", "step": len(state.messages), "timestamp": checkpoint.timestamp}
        try:
            self._store.put(self.key(thread_id), checkpoint.model_dump_json(), metadata)
        except PersistenceError as exc:
            logger.warning("Error saving checkpoint for thread %s: %s", thread_id, exc)
            return False
        except Exception:
            logger.exception("Error saving checkpoint for thread %s", thread_id)
            return False
        logger.debug("Saved checkpoint for %s (%d messages)", thread_id, len(state.messages))
        return True

    def prune(self, messages: Sequence[Message]) -> list[Message]:
        return prune(messages, self.max_age_ms, self.max_entries)

    def hydrate(self, thread_id: str, inbound: Sequence[Message]) -> ConversationState:
        """
        Start state for a new invocation.

        Stored history is trimmed to the context window and placed before the
        new inbound messages. Per-invocation fields start over; tool feedback
        carries across invocations.
        """
        stored = self.load(thread_id)
        history = self.prune(stored.messages)
        return ConversationState(
            thread_id=thread_id,
            messages=[*history, *inbound],
            tool_feedback=dict(stored.tool_feedback),
            status=Status.CONTINUE,
        )
