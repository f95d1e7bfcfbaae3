"""Transcript persistence: finalized entries and resume ids on disk.

Storage layout:
    {data_dir}/conversations/{conversation_id}.jsonl   one entry per line
    {data_dir}/conversations/{conversation_id}.meta.json  resume id etc.

The JSONL file is append-only. An entry id may appear more than once
(a message finalized by both the stream and a whole-message event);
on load the last record for an id wins and keeps the first position.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from agentlink.shared.models.message import TranscriptEntry
from agentlink.shared.services.durable_write import append_line, atomic_write_text

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9._-]")


class TranscriptSink(Protocol):
    """What the coordinator needs from a persistence collaborator."""

    def save_entry(self, conversation_id: str, entry: TranscriptEntry) -> None: ...

    def save_resume_id(self, conversation_id: str, resume_id: str) -> None: ...


class TranscriptPersistence:
    """JSONL-file implementation of TranscriptSink."""

    def __init__(self, base_dir: Path) -> None:
        self._dir = Path(base_dir) / "conversations"
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _stem(self, conversation_id: str) -> str:
        stem = _SAFE_ID_RE.sub("_", conversation_id)
        if stem == conversation_id and stem.strip("._"):
            return stem
        # Rewritten ids get a digest so "a/b" and "a_b" stay distinct.
        digest = hashlib.sha1(conversation_id.encode("utf-8")).hexdigest()[:8]
        return f"{stem}-{digest}"

    def _entries_path(self, conversation_id: str) -> Path:
        return self._dir / f"{self._stem(conversation_id)}.jsonl"

    def _meta_path(self, conversation_id: str) -> Path:
        return self._dir / f"{self._stem(conversation_id)}.meta.json"

    def save_entry(self, conversation_id: str, entry: TranscriptEntry) -> None:
        if entry.is_partial:
            logger.debug("Not persisting partial entry %s", entry.id)
            return
        append_line(self._entries_path(conversation_id), json.dumps(entry.to_dict()))

    def load_entries(self, conversation_id: str) -> list[TranscriptEntry]:
        path = self._entries_path(conversation_id)
        if not path.exists():
            return []
        by_id: dict[str, TranscriptEntry] = {}
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = TranscriptEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as exc:
                    logger.warning(
                        "Skipping corrupt transcript line %s:%d: %s",
                        path.name, lineno, exc,
                    )
                    continue
                by_id[entry.id] = entry
        return list(by_id.values())

    def _load_meta(self, conversation_id: str) -> dict[str, Any]:
        path = self._meta_path(conversation_id)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable metadata %s: %s", path.name, exc)
            return {}

    def save_resume_id(self, conversation_id: str, resume_id: str) -> None:
        meta = self._load_meta(conversation_id)
        meta["conversation_id"] = conversation_id
        meta["resume_id"] = resume_id
        meta["updated_at"] = datetime.now(timezone.utc).isoformat()
        atomic_write_text(self._meta_path(conversation_id), json.dumps(meta, indent=2))
        logger.info("Saved resume id for conversation %s", conversation_id)

    def load_resume_id(self, conversation_id: str) -> str | None:
        return self._load_meta(conversation_id).get("resume_id")

    def list_conversations(self) -> list[str]:
        return sorted(p.stem for p in self._dir.glob("*.jsonl"))

    def delete(self, conversation_id: str) -> bool:
        removed = False
        for path in (self._entries_path(conversation_id), self._meta_path(conversation_id)):
            if path.exists():
                path.unlink()
                removed = True
        return removed
