"""Assistant hook integration.

The assistant runs ``rewind hook`` before every prompt (the
``UserPromptSubmit`` event) and pipes a JSON payload on stdin::

    {"session_id": "...", "transcript_path": "...", "prompt": "...",
     "hook_event_name": "UserPromptSubmit", "cwd": "..."}

The hook replies with JSON on stdout. It must never block the prompt: every
failure is logged and reported in the reply's ``context`` while ``allow``
stays true. That policy lives here, not in the engine.

This module also installs/removes the hook entry in the assistant's
settings.json.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rewind.atomic import atomic_write_json
from rewind.config import RewindConfig
from rewind.engine import SnapshotEngine
from rewind.errors import Result, RewindError, err, format_error, ok

logger = logging.getLogger(__name__)

HOOK_EVENT = "UserPromptSubmit"
HOOK_COMMAND = "rewind hook"
PROMPT_SUMMARY_LENGTH = 100
SESSION_ID_LENGTH = 8
DEFAULT_PROMPT_SUMMARY = "Claude prompt"

# Maximum transcript line length to prevent memory exhaustion
MAX_LINE_LENGTH = 10_000_000


@dataclass(frozen=True)
class HookPayload:
    """Typed view of the hook's stdin payload. Missing fields are empty."""

    session_id: str = ""
    transcript_path: str | None = None
    prompt: str = ""
    hook_event_name: str = ""
    cwd: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookPayload:
        def text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        return cls(
            session_id=text("session_id"),
            transcript_path=text("transcript_path") or None,
            prompt=text("prompt"),
            hook_event_name=text("hook_event_name"),
            cwd=text("cwd") or None,
        )

    @classmethod
    def from_json(cls, raw: str) -> HookPayload:
        """Parse a payload string.

        Raises:
            ValueError: not JSON, or not a JSON object
        """
        if not raw.strip():
            return cls()
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Hook payload must be a JSON object")
        return cls.from_dict(data)


def summarize_prompt(prompt: str) -> str:
    """First 100 characters of the prompt on one line."""
    summary = prompt[:PROMPT_SUMMARY_LENGTH].replace("\r", " ").replace("\n", " ").strip()
    return summary or DEFAULT_PROMPT_SUMMARY


def short_session_id(session_id: str) -> str:
    """First 8 characters, restricted to characters a session id may hold."""
    return re.sub(r"[^A-Za-z0-9_-]", "-", session_id[:SESSION_ID_LENGTH])


def count_user_prompts(transcript_path: str | None) -> int | None:
    """Number of user turns in a transcript, or None if unavailable.

    Accepts JSONL transcripts (one entry per line, ``message.role``) and
    single JSON documents with a ``messages`` array. Tool results are
    delivered as user-role entries without text and are not counted.
    """
    if not transcript_path:
        return None

    path = Path(transcript_path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(f"Failed to read transcript {path}: {e}")
        return None

    try:
        document = json.loads(raw)
    except json.JSONDecodeError:
        document = None

    if isinstance(document, dict) and isinstance(document.get("messages"), list):
        return sum(1 for m in document["messages"] if isinstance(m, dict) and m.get("role") == "user")

    count = 0
    for line in raw.splitlines():
        if not line.strip() or len(line) > MAX_LINE_LENGTH:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if _is_user_prompt(entry):
            count += 1
    return count


def _is_user_prompt(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    message = entry.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return False
    content = message.get("content")
    if isinstance(content, str):
        return bool(content.strip())
    if isinstance(content, list):
        return any(isinstance(b, dict) and b.get("type") == "text" for b in content)
    return False


def handle_hook(
    payload: HookPayload,
    config: RewindConfig,
    storage_root: Path | None = None,
) -> dict[str, Any]:
    """Create a checkpoint for a prompt-submit event.

    Returns the JSON reply for the assistant. Never raises.
    """
    if payload.hook_event_name != HOOK_EVENT:
        return {"allow": True}
    if not payload.session_id or not config.auto_checkpoint:
        return {"allow": True}

    project_dir = os.environ.get("CLAUDE_PROJECT_DIR") or payload.cwd or os.getcwd()

    try:
        engine = SnapshotEngine.for_project(project_dir, config, storage_root=storage_root)
        checkpoint = engine.create(
            summarize_prompt(payload.prompt),
            session_id=short_session_id(payload.session_id),
            prompt_index=count_user_prompts(payload.transcript_path),
        )
    except (RewindError, OSError, ValueError) as e:
        logger.warning(f"Hook checkpoint failed in {project_dir}: {e}")
        return {"allow": True, "context": f"⚠️ Checkpoint failed: {format_error(e)}"}

    return {"allow": True, "context": f"📝 Checkpoint created: {checkpoint.short_id}"}


# =============================================================================
# Assistant settings.json
# =============================================================================


def find_settings_path(cwd: Path | None = None, home: Path | None = None) -> Path:
    """Pick the settings file to edit.

    First existing of ``~/.claude/settings.json``,
    ``./.claude/settings.json``, ``./.claude/settings.local.json``;
    defaults to the user-level file.
    """
    cwd = cwd or Path.cwd()
    home = home or Path.home()
    candidates = [
        home / ".claude" / "settings.json",
        cwd / ".claude" / "settings.json",
        cwd / ".claude" / "settings.local.json",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _load_settings(settings_path: Path) -> Result[dict, RewindError]:
    if not settings_path.exists():
        return ok({})
    try:
        settings = json.loads(settings_path.read_text(encoding="utf-8") or "{}")
    except (OSError, json.JSONDecodeError) as e:
        return err(RewindError(f"Could not parse {settings_path}: {e}", code="SETTINGS_INVALID"))
    if not isinstance(settings, dict):
        return err(RewindError(f"{settings_path} is not a JSON object", code="SETTINGS_INVALID"))
    return ok(settings)


def _is_rewind_hook(hook: Any) -> bool:
    return isinstance(hook, dict) and hook.get("command") == HOOK_COMMAND


def is_hook_installed(settings_path: Path) -> bool:
    result = _load_settings(settings_path)
    if result.is_err():
        return False
    groups = result.unwrap().get("hooks", {}).get(HOOK_EVENT, [])
    return any(
        _is_rewind_hook(hook)
        for group in groups
        if isinstance(group, dict)
        for hook in group.get("hooks", [])
    )


def install_hook(settings_path: Path) -> Result[bool, RewindError]:
    """Add the prompt-submit hook. Ok(False) if it was already there.

    Other hooks and settings are preserved. An unparseable settings file is
    left untouched and reported as Err.
    """
    result = _load_settings(settings_path)
    if result.is_err():
        return result

    settings = result.unwrap()
    if is_hook_installed(settings_path):
        return ok(False)

    hooks = settings.setdefault("hooks", {})
    hooks.setdefault(HOOK_EVENT, []).append({"hooks": [{"type": "command", "command": HOOK_COMMAND}]})

    write = atomic_write_json(settings_path, settings, mode=0o644)
    if write.is_err():
        return err(write.unwrap_err())
    logger.info(f"Installed {HOOK_EVENT} hook in {settings_path}")
    return ok(True)


def uninstall_hook(settings_path: Path) -> Result[int, RewindError]:
    """Remove only our hook entries. Returns how many were removed."""
    if not settings_path.exists():
        return ok(0)

    result = _load_settings(settings_path)
    if result.is_err():
        return result
    settings = result.unwrap()

    hooks = settings.get("hooks")
    if not isinstance(hooks, dict) or not isinstance(hooks.get(HOOK_EVENT), list):
        return ok(0)

    removed = 0
    kept_groups = []
    for group in hooks[HOOK_EVENT]:
        if not isinstance(group, dict) or not isinstance(group.get("hooks"), list):
            kept_groups.append(group)
            continue
        remaining = [h for h in group["hooks"] if not _is_rewind_hook(h)]
        removed += len(group["hooks"]) - len(remaining)
        if remaining:
            kept_groups.append({**group, "hooks": remaining})

    if not removed:
        return ok(0)

    if kept_groups:
        hooks[HOOK_EVENT] = kept_groups
    else:
        del hooks[HOOK_EVENT]
    if not hooks:
        del settings["hooks"]

    write = atomic_write_json(settings_path, settings, mode=0o644)
    if write.is_err():
        return err(write.unwrap_err())
    logger.info(f"Removed {removed} hook entr{'y' if removed == 1 else 'ies'} from {settings_path}")
    return ok(removed)
