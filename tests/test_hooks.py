"""Tests for rewind.hooks module."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from rewind.config import RewindConfig
from rewind.engine import SnapshotEngine
from rewind.errors import StorageIOError
from rewind.hooks import (
    HOOK_COMMAND,
    HookPayload,
    count_user_prompts,
    find_settings_path,
    handle_hook,
    install_hook,
    is_hook_installed,
    short_session_id,
    summarize_prompt,
    uninstall_hook,
)


@pytest.fixture
def sample_entries():
    """Sample JSONL transcript entries."""
    return [
        {"message": {"role": "user", "content": "Help me implement a feature"}},
        {"message": {"role": "assistant", "content": "Sure."}},
        {"message": {"role": "user", "content": [{"type": "tool_result", "content": "ok"}]}},
        {"message": {"role": "user", "content": [{"type": "text", "text": "Now add tests"}]}},
        {"type": "summary", "summary": "compacted"},
    ]


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "a.txt").write_text("1")
    monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
    return root


def prompt_payload(project: Path, **overrides) -> HookPayload:
    data = {
        "session_id": "3f2a9c1e-77aa-4b1b-9f00-123456789abc",
        "prompt": "Refactor the parser",
        "hook_event_name": "UserPromptSubmit",
        "cwd": str(project),
    }
    data.update(overrides)
    return HookPayload.from_dict(data)


class TestHookPayload:
    def test_from_dict(self):
        """String fields are copied from the payload."""
        payload = HookPayload.from_dict(
            {
                "session_id": "s1",
                "transcript_path": "/tmp/t.jsonl",
                "prompt": "hi",
                "hook_event_name": "UserPromptSubmit",
                "cwd": "/work",
            }
        )

        assert payload.session_id == "s1"
        assert payload.transcript_path == "/tmp/t.jsonl"
        assert payload.cwd == "/work"

    def test_missing_and_mistyped_fields_default(self):
        """Missing or non-string fields fall back to defaults."""
        payload = HookPayload.from_dict({"session_id": 42, "prompt": None})

        assert payload == HookPayload()
        assert payload.transcript_path is None
        assert payload.cwd is None

    def test_from_json(self):
        """A JSON object on stdin parses into a payload."""
        assert HookPayload.from_json('{"session_id": "s"}').session_id == "s"

    def test_from_json_empty(self):
        """Blank input gives the default payload."""
        assert HookPayload.from_json("  ") == HookPayload()

    def test_from_json_invalid(self):
        """Malformed JSON raises ValueError."""
        with pytest.raises(ValueError):
            HookPayload.from_json("{not json")

    def test_from_json_not_object(self):
        """A JSON array is not a payload."""
        with pytest.raises(ValueError):
            HookPayload.from_json("[1, 2]")


class TestHelpers:
    def test_summarize_prompt(self):
        """Prompts are flattened to one line and truncated."""
        assert summarize_prompt("line one\nline two") == "line one line two"
        assert len(summarize_prompt("x" * 500)) == 100

    def test_summarize_empty_prompt(self):
        """An empty prompt gets the default summary."""
        assert summarize_prompt("") == "Claude prompt"
        assert summarize_prompt("\n\n") == "Claude prompt"

    def test_short_session_id(self):
        """Session ids are shortened and made safe for messages."""
        assert short_session_id("3f2a9c1e-77aa") == "3f2a9c1e"
        assert short_session_id("a.b c") == "a-b-c"


class TestCountUserPrompts:
    def test_jsonl(self, tmp_path: Path, sample_entries):
        """Only real user prompts are counted, not tool results."""
        transcript = tmp_path / "session.jsonl"
        transcript.write_text("\n".join(json.dumps(e) for e in sample_entries) + "\n")

        assert count_user_prompts(str(transcript)) == 2

    def test_skips_bad_lines(self, tmp_path: Path, sample_entries):
        """Malformed and blank lines are skipped."""
        transcript = tmp_path / "session.jsonl"
        transcript.write_text(json.dumps(sample_entries[0]) + "\n{broken\n\n")

        assert count_user_prompts(str(transcript)) == 1

    def test_messages_document(self, tmp_path: Path):
        """A JSON document with a messages list is also understood."""
        transcript = tmp_path / "session.json"
        transcript.write_text(json.dumps({"messages": [{"role": "user"}, {"role": "assistant"}, {"role": "user"}]}))

        assert count_user_prompts(str(transcript)) == 2

    def test_missing_file(self, tmp_path: Path):
        """A missing transcript gives no count."""
        assert count_user_prompts(str(tmp_path / "nope.jsonl")) is None

    def test_no_path(self):
        """No transcript path gives no count."""
        assert count_user_prompts(None) is None


class TestHandleHook:
    """Prompt-submit handling never blocks the assistant."""

    def test_creates_checkpoint(self, project: Path, tmp_path: Path):
        """A prompt creates a checkpoint tagged with the short session id."""
        reply = handle_hook(prompt_payload(project), RewindConfig(), storage_root=tmp_path / "store")

        assert reply["allow"] is True
        assert reply["context"].startswith("📝 Checkpoint created: ")

        engine = SnapshotEngine.for_project(project, RewindConfig(), storage_root=tmp_path / "store")
        checkpoints = engine.list()
        assert len(checkpoints) == 1
        assert checkpoints[0].session_id == "3f2a9c1e"
        assert checkpoints[0].message == "Refactor the parser"
        assert reply["context"].endswith(checkpoints[0].short_id)

    def test_passes_prompt_index(self, project: Path, tmp_path: Path, sample_entries):
        """The prompt count from the transcript is passed to create."""
        transcript = tmp_path / "session.jsonl"
        transcript.write_text("\n".join(json.dumps(e) for e in sample_entries))
        payload = prompt_payload(project, transcript_path=str(transcript))

        with patch.object(SnapshotEngine, "create") as create:
            create.return_value.short_id = "deadbeef"
            handle_hook(payload, RewindConfig(), storage_root=tmp_path / "store")

        assert create.call_args.kwargs["prompt_index"] == 2

    def test_project_dir_env_wins(self, project: Path, tmp_path: Path, monkeypatch):
        """CLAUDE_PROJECT_DIR takes precedence over the payload cwd."""
        other = tmp_path / "other"
        other.mkdir()
        monkeypatch.setenv("CLAUDE_PROJECT_DIR", str(other))

        handle_hook(prompt_payload(project), RewindConfig(), storage_root=tmp_path / "store")

        engine = SnapshotEngine.for_project(other, RewindConfig(), storage_root=tmp_path / "store")
        assert len(engine.list()) == 1

    @pytest.mark.parametrize(
        "overrides",
        [{"hook_event_name": "Stop"}, {"session_id": ""}],
    )
    def test_ignored_events(self, project: Path, tmp_path: Path, overrides):
        """Other events and anonymous sessions create nothing."""
        reply = handle_hook(prompt_payload(project, **overrides), RewindConfig(), storage_root=tmp_path / "store")

        assert reply == {"allow": True}
        assert not (tmp_path / "store").exists()

    def test_auto_checkpoint_disabled(self, project: Path, tmp_path: Path):
        """auto_checkpoint=False turns the hook into a no-op."""
        reply = handle_hook(
            prompt_payload(project), RewindConfig(auto_checkpoint=False), storage_root=tmp_path / "store"
        )

        assert reply == {"allow": True}

    def test_failure_is_reported_not_raised(self, project: Path, tmp_path: Path):
        """A failed checkpoint is reported in the context."""
        error = StorageIOError("write object", "disk full")

        with patch.object(SnapshotEngine, "create", side_effect=error):
            reply = handle_hook(prompt_payload(project), RewindConfig(), storage_root=tmp_path / "store")

        assert reply["allow"] is True
        assert reply["context"].startswith("⚠️ Checkpoint failed: ")
        assert "disk full" in reply["context"]


class TestSettings:
    """Installing the hook into the assistant's settings.json."""

    def test_find_settings_prefers_user_file(self, tmp_path: Path):
        """The user settings file wins when both exist."""
        home = tmp_path / "home"
        cwd = tmp_path / "cwd"
        (home / ".claude").mkdir(parents=True)
        (home / ".claude" / "settings.json").write_text("{}")
        (cwd / ".claude").mkdir(parents=True)
        (cwd / ".claude" / "settings.json").write_text("{}")

        assert find_settings_path(cwd=cwd, home=home) == home / ".claude" / "settings.json"

    def test_find_settings_project_local(self, tmp_path: Path):
        """A project-local settings file is used when it is the only one."""
        home = tmp_path / "home"
        cwd = tmp_path / "cwd"
        (cwd / ".claude").mkdir(parents=True)
        (cwd / ".claude" / "settings.local.json").write_text("{}")

        assert find_settings_path(cwd=cwd, home=home) == cwd / ".claude" / "settings.local.json"

    def test_find_settings_default(self, tmp_path: Path):
        """With no settings file, the user path is returned."""
        home = tmp_path / "home"

        assert find_settings_path(cwd=tmp_path / "cwd", home=home) == home / ".claude" / "settings.json"

    def test_install_into_new_file(self, tmp_path: Path):
        """Installing creates the settings file with our hook."""
        settings_path = tmp_path / ".claude" / "settings.json"

        result = install_hook(settings_path)

        assert result.is_ok() and result.unwrap() is True
        settings = json.loads(settings_path.read_text())
        assert settings == {
            "hooks": {"UserPromptSubmit": [{"hooks": [{"type": "command", "command": HOOK_COMMAND}]}]}
        }
        assert is_hook_installed(settings_path)

    def test_install_preserves_existing(self, tmp_path: Path):
        """Other settings and hooks are kept."""
        settings_path = tmp_path / "settings.json"
        existing = {
            "model": "opus",
            "hooks": {
                "UserPromptSubmit": [{"hooks": [{"type": "command", "command": "other-tool"}]}],
                "Stop": [{"hooks": [{"type": "command", "command": "notify"}]}],
            },
        }
        settings_path.write_text(json.dumps(existing))

        install_hook(settings_path)

        settings = json.loads(settings_path.read_text())
        assert settings["model"] == "opus"
        assert settings["hooks"]["Stop"] == existing["hooks"]["Stop"]
        assert len(settings["hooks"]["UserPromptSubmit"]) == 2

    def test_install_twice_is_noop(self, tmp_path: Path):
        """A second install adds nothing."""
        settings_path = tmp_path / "settings.json"
        install_hook(settings_path)

        result = install_hook(settings_path)

        assert result.unwrap() is False
        assert len(json.loads(settings_path.read_text())["hooks"]["UserPromptSubmit"]) == 1

    def test_install_refuses_invalid_json(self, tmp_path: Path):
        """An unparseable file is left untouched."""
        settings_path = tmp_path / "settings.json"
        settings_path.write_text("{invalid")

        result = install_hook(settings_path)

        assert result.is_err()
        assert settings_path.read_text() == "{invalid"

    def test_uninstall_removes_only_ours(self, tmp_path: Path):
        """Other commands in the same event stay."""
        settings_path = tmp_path / "settings.json"
        settings_path.write_text(
            json.dumps(
                {
                    "hooks": {
                        "UserPromptSubmit": [
                            {"hooks": [{"type": "command", "command": "other-tool"}]},
                            {"hooks": [{"type": "command", "command": HOOK_COMMAND}]},
                        ]
                    }
                }
            )
        )

        result = uninstall_hook(settings_path)

        assert result.unwrap() == 1
        settings = json.loads(settings_path.read_text())
        assert settings["hooks"]["UserPromptSubmit"] == [{"hooks": [{"type": "command", "command": "other-tool"}]}]

    def test_uninstall_drops_empty_sections(self, tmp_path: Path):
        """Empty event lists and hooks sections are removed."""
        settings_path = tmp_path / "settings.json"
        settings_path.write_text(json.dumps({"model": "opus"}))
        install_hook(settings_path)

        assert uninstall_hook(settings_path).unwrap() == 1
        assert json.loads(settings_path.read_text()) == {"model": "opus"}
        assert not is_hook_installed(settings_path)

    def test_uninstall_missing_file(self, tmp_path: Path):
        """Uninstalling from a missing file removes nothing."""
        assert uninstall_hook(tmp_path / "settings.json").unwrap() == 0

    def test_uninstall_nothing_to_remove(self, tmp_path: Path):
        """A file without our hook is not rewritten."""
        settings_path = tmp_path / "settings.json"
        settings_path.write_text('{"hooks": {}}')

        assert uninstall_hook(settings_path).unwrap() == 0
        assert settings_path.read_text() == '{"hooks": {}}'
