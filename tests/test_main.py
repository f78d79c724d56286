"""Tests for the command line entry point."""

import io
import json
from pathlib import Path

import pytest

from strata.__main__ import MAX_CAPTURE_CHARS, event_content, parse_arguments, run_capture
from strata.config import get_project_hash
from strata.storage import ObservationRepository, ToolRegistryRepository, open_database


class TestParseArguments:
    """Test CLI parsing."""

    def test_defaults_from_settings(self) -> None:
        args = parse_arguments([])
        assert args.command == "serve"
        assert args.embedding_backend == "none"
        assert args.interval == pytest.approx(0.05)
        assert args.log_level == "DEBUG"

    def test_capture_command(self, temp_dir: Path) -> None:
        args = parse_arguments(["capture", "--db", str(temp_dir / "x.db")])
        assert args.command == "capture"
        assert args.db == temp_dir / "x.db"

    def test_invalid_backend(self) -> None:
        with pytest.raises(SystemExit):
            parse_arguments(["--embedding-backend", "mlx"])


class TestEventContent:
    """Test observation text built from hook events."""

    def test_explicit_content(self) -> None:
        assert event_content({"tool_name": "Edit", "content": "changed app.py"}) == "changed app.py"

    def test_tool_input_serialized(self) -> None:
        content = event_content({"tool_name": "Bash", "tool_input": {"command": "ls", "cwd": "/"}})
        assert content == 'Bash: {"command": "ls", "cwd": "/"}'

    def test_structured_content_serialized(self) -> None:
        content = event_content({"tool_name": "Edit", "content": {"file": "app.py", "lines": 3}})
        assert content == '{"file": "app.py", "lines": 3}'

    def test_truncated(self) -> None:
        content = event_content({"tool_name": "Write", "content": "x" * 5000})
        assert len(content) == MAX_CAPTURE_CHARS


class TestRunCapture:
    """Test the capture command."""

    def test_records_event(self, temp_dir: Path) -> None:
        db_path = temp_dir / "strata.db"
        args = parse_arguments(["capture", "--db", str(db_path), "--project", str(temp_dir)])
        event = {"tool_name": "Edit", "content": "enabled WAL", "session_id": "s-1"}

        assert run_capture(args, io.StringIO(json.dumps(event))) == 0

        with open_database(db_path) as db:
            repo = ObservationRepository(db.conn, get_project_hash(temp_dir))
            assert [o.content for o in repo.list()] == ["enabled WAL"]
            assert ToolRegistryRepository(db).get_by_name("Edit").usage_count == 1

    def test_event_cwd_selects_partition(self, temp_dir: Path) -> None:
        db_path = temp_dir / "strata.db"
        project = temp_dir / "project"
        project.mkdir()
        args = parse_arguments(["capture", "--db", str(db_path), "--project", str(temp_dir)])
        event = {"tool_name": "Bash", "content": "ran tests", "cwd": str(project)}

        run_capture(args, io.StringIO(json.dumps(event)))

        with open_database(db_path) as db:
            assert ObservationRepository(db.conn, get_project_hash(project)).count() == 1
            assert ObservationRepository(db.conn, get_project_hash(temp_dir)).count() == 0

    def test_structured_content_recorded(self, temp_dir: Path) -> None:
        db_path = temp_dir / "strata.db"
        args = parse_arguments(["capture", "--db", str(db_path), "--project", str(temp_dir)])
        event = {"tool_name": "Edit", "content": {"file": "app.py"}}

        assert run_capture(args, io.StringIO(json.dumps(event))) == 0

        with open_database(db_path) as db:
            repo = ObservationRepository(db.conn, get_project_hash(temp_dir))
            assert [o.content for o in repo.list()] == ['{"file": "app.py"}']

    @pytest.mark.parametrize(
        "payload", ["not json", "[]", '{"content": "no tool"}', '{"tool_name": 5, "content": "x"}']
    )
    def test_bad_payload_still_succeeds(self, temp_dir: Path, payload: str) -> None:
        args = parse_arguments(["capture", "--db", str(temp_dir / "strata.db")])
        assert run_capture(args, io.StringIO(payload)) == 0

    def test_unwritable_store_still_succeeds(self, temp_dir: Path) -> None:
        blocker = temp_dir / "file"
        blocker.write_text("")
        args = parse_arguments(["capture", "--db", str(blocker / "strata.db")])
        event = {"tool_name": "Edit", "content": "lost"}
        assert run_capture(args, io.StringIO(json.dumps(event))) == 0
