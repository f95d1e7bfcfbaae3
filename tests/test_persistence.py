from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory

from agentlink.engine.models import RawToolInput, Usage
from agentlink.shared.models.message import MessageRole, TranscriptEntry
from agentlink.shared.services.durable_write import atomic_write_text
from agentlink.shared.services.persistence import TranscriptPersistence


def test_entries_round_trip_through_jsonl() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        tool = TranscriptEntry(
            id="toolu_1",
            role=MessageRole.TOOL,
            content="Using tool: Write",
            tool_name="Write",
            tool_input=RawToolInput('{"file_path": "a.py"'),
        )
        answer = TranscriptEntry(
            id="m1",
            role=MessageRole.ASSISTANT,
            content="Done.",
            usage=Usage(input_tokens=10, output_tokens=2, cache_read_input_tokens=5),
            cost=0.01,
        )
        persistence.save_entry("conv-1", tool)
        persistence.save_entry("conv-1", answer)

        loaded = persistence.load_entries("conv-1")
        assert [e.id for e in loaded] == ["toolu_1", "m1"]
        assert loaded[0].tool_input == RawToolInput('{"file_path": "a.py"')
        assert loaded[1].usage.cache_read_input_tokens == 5
        assert loaded[1].usage.cache_creation_input_tokens is None
        assert loaded[1].timestamp == answer.timestamp


def test_partial_entries_are_not_saved() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        persistence.save_entry("conv-1", TranscriptEntry(
            role=MessageRole.ASSISTANT, content="Hel", is_partial=True,
        ))
        assert persistence.load_entries("conv-1") == []
        assert persistence.list_conversations() == []


def test_last_record_for_an_id_wins() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        persistence.save_entry("c", TranscriptEntry(id="a", role=MessageRole.ASSISTANT, content="v1"))
        persistence.save_entry("c", TranscriptEntry(id="b", role=MessageRole.SYSTEM, content="done"))
        persistence.save_entry("c", TranscriptEntry(id="a", role=MessageRole.ASSISTANT, content="v2"))

        loaded = persistence.load_entries("c")
        assert [(e.id, e.content) for e in loaded] == [("a", "v2"), ("b", "done")]


def test_corrupt_lines_are_skipped() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        persistence.save_entry("c", TranscriptEntry(id="a", role=MessageRole.USER, content="hi"))
        path = persistence.directory / "c.jsonl"
        with open(path, "a", encoding="utf-8") as f:
            f.write("not json\n\n")
            f.write(json.dumps({"id": "x", "role": "robot"}) + "\n")

        assert [e.id for e in persistence.load_entries("c")] == ["a"]


def test_resume_id_is_saved_in_metadata() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        assert persistence.load_resume_id("c") is None

        persistence.save_resume_id("c", "abc")
        persistence.save_resume_id("c", "def")
        assert persistence.load_resume_id("c") == "def"

        meta = json.loads((persistence.directory / "c.meta.json").read_text(encoding="utf-8"))
        assert meta["conversation_id"] == "c"
        assert "updated_at" in meta
        assert not list(persistence.directory.glob("*.tmp"))


def test_unsafe_ids_stay_inside_the_directory() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        persistence.save_entry("../evil", TranscriptEntry(role=MessageRole.USER, content="x"))
        files = [p.name for p in persistence.directory.iterdir()]
        assert len(files) == 1
        assert files[0].startswith(".._evil-")
        assert not (Path(tmpdir) / "evil.jsonl").exists()
        assert [e.content for e in persistence.load_entries("../evil")] == ["x"]


def test_ids_that_sanitize_alike_use_separate_files() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        persistence.save_entry("a/b", TranscriptEntry(role=MessageRole.USER, content="slash"))
        persistence.save_entry("a_b", TranscriptEntry(role=MessageRole.USER, content="underscore"))

        assert [e.content for e in persistence.load_entries("a/b")] == ["slash"]
        assert [e.content for e in persistence.load_entries("a_b")] == ["underscore"]
        assert len(persistence.list_conversations()) == 2


def test_dot_only_ids_are_stored_safely() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        persistence.save_resume_id("...", "r1")
        assert persistence.load_resume_id("...") == "r1"
        assert all(p.parent == persistence.directory for p in persistence.directory.iterdir())


def test_list_and_delete() -> None:
    with TemporaryDirectory() as tmpdir:
        persistence = TranscriptPersistence(Path(tmpdir))
        for cid in ("b", "a"):
            persistence.save_entry(cid, TranscriptEntry(role=MessageRole.USER, content=cid))
        persistence.save_resume_id("a", "r")

        assert persistence.list_conversations() == ["a", "b"]
        assert persistence.delete("a") is True
        assert persistence.delete("a") is False
        assert persistence.list_conversations() == ["b"]
        assert persistence.load_resume_id("a") is None


def test_atomic_write_replaces_content() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "nested" / "file.json"
        atomic_write_text(path, "one")
        atomic_write_text(path, "two")
        assert path.read_text(encoding="utf-8") == "two"
        assert [p.name for p in path.parent.iterdir()] == ["file.json"]
