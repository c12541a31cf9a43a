"""Slash commands for the interactive chat.

Every command returns a short string for the user. Broker and session
errors are reported the same way; nothing raises back to the REPL.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from easel.config import Settings
from easel.conversation.compaction import summarize_conversation
from easel.conversation.engine import ConversationEngine
from easel.errors import EaselError, NotConnected
from easel.llm import create_backend, list_backends
from easel.skills import Skill, build_skill_prompt
from easel.workspace.broker import EXPORT_TIMEOUT
from easel.workspace.pdf import export_pdf_to_file
from easel.workspace.session import SessionManager

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Available commands:
  /help              Show this help message
  /canvas [name]     List canvases, or open / switch to one
  /export [path]     Export the open canvas as an A4 PDF
  /save              Save the open canvas
  /model [name]      Show or switch the backend and model
  /context           Show context window usage
  /compact           Summarize the conversation to save context
  /clear             Clear conversation history
  /quit              Exit"""

CommandHandler = Callable[[str], Awaitable[str]]


def resolve_export_target(args: str, canvas_name: str, export_dir: str) -> tuple[Path, Path | None]:
    """Resolve ``/export`` arguments to (output file, new export dir or None).

    No argument writes ``<canvas>.pdf`` into ``export_dir``. A ``.pdf`` path is
    used as-is; a trailing slash or an existing directory receives
    ``<canvas>.pdf``. Any explicit target becomes the new export directory.
    """
    filename = f"{canvas_name}.pdf"
    raw = args.strip()
    if not raw:
        return Path(export_dir).expanduser() / filename, None

    target = Path(raw).expanduser().resolve()
    if raw.endswith(("/", "\\")):
        return target / filename, target
    if target.suffix.lower() == ".pdf":
        return target, target.parent
    return target / filename, target


def format_context(engine: ConversationEngine) -> str:
    ctx = engine.conversation.estimate_context()
    return "\n".join(
        [
            f"Context: ~{ctx.total_tokens:,} tokens across {ctx.message_count} messages",
            f"  user       ~{ctx.user_tokens:,}",
            f"  assistant  ~{ctx.assistant_tokens:,}",
            f"  tools      ~{ctx.tool_tokens:,}",
            f"  images     {ctx.image_count}",
        ]
    )


def _describe(backend) -> str:
    model = getattr(backend, "model", "")
    return f"{backend.name} ({model})" if model else backend.name


class CommandRouter:
    def __init__(
        self,
        sessions: SessionManager,
        engine: ConversationEngine,
        export_dir: str,
        keep_recent: int = 4,
        export_timeout: float = EXPORT_TIMEOUT,
        skills: list[Skill] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.sessions = sessions
        self.engine = engine
        self.export_dir = export_dir
        self.keep_recent = keep_recent
        self.export_timeout = export_timeout
        self.settings = settings
        self._commands: dict[str, CommandHandler] = {
            "help": self._help,
            "canvas": self._canvas,
            "export": self._export,
            "save": self._save,
            "model": self._model,
            "context": self._context,
            "compact": self._compact,
            "clear": self._clear,
        }
        # Built-in commands win over a structure with the same slug
        self._skills = {s.slug: s for s in skills or [] if s.slug not in self._commands}

    @property
    def skills(self) -> list[Skill]:
        return list(self._skills.values())

    @staticmethod
    def is_command(text: str) -> bool:
        return text.startswith("/")

    def skill_turn(self, line: str) -> tuple[str, str] | None:
        """(user text, system overlay) when ``line`` invokes a skill, else None."""
        name, _, args = line.strip().lstrip("/").partition(" ")
        skill = self._skills.get(name.lower())
        if skill is None:
            return None
        args = args.strip()
        user_text = args or f"I'd like to create a {skill.name}."
        return user_text, build_skill_prompt(skill, args)

    async def handle(self, line: str) -> str:
        name, _, args = line.strip().lstrip("/").partition(" ")
        name = name.lower()
        handler = self._commands.get(name)
        if handler is None:
            return f"Unknown command: /{name}. Type /help for available commands."
        try:
            return await handler(args.strip())
        except EaselError as e:
            return str(e)
        except Exception as e:
            logger.exception("Command /%s failed", name)
            return f"/{name} failed: {e}"

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _help(self, args: str) -> str:
        if not self._skills:
            return HELP_TEXT
        lines = [HELP_TEXT, "", "Skills (from Structures/):"]
        lines.extend(f"  /{s.slug}".ljust(21) + s.description for s in self._skills.values())
        return "\n".join(lines)

    async def _canvas(self, args: str) -> str:
        if not args:
            names = await self.sessions.list()
            active = self.sessions.active_info
            lines = []
            if active:
                state = "connected" if self.sessions.is_connected else "waiting for a client"
                lines.append(f'Open: "{active.name}" at {active.url} ({state})')
            lines.append("Saved canvases: " + (", ".join(names) if names else "(none)"))
            lines.append("Use /canvas <name> to open or create one.")
            return "\n".join(lines)

        try:
            info = await self.sessions.open(args)
        except ValueError as e:
            return str(e)
        except OSError as e:
            return f"Could not start the canvas server: {e}"
        return f'Canvas "{info.name}" opened at {info.url}\nOpen this on your tablet to start drawing.'

    async def _export(self, args: str) -> str:
        active = self.sessions.active_info
        if active is None:
            return "No canvas is open. Use /canvas to open one."

        output_path, next_dir = resolve_export_target(args, active.name, self.export_dir)
        try:
            response = await self.sessions.export_pages(self.export_timeout)
        except NotConnected:
            return (
                "Export failed: no canvas client is currently connected.\n"
                f"Open {active.url} on your device and keep it connected while running /export."
            )
        except EaselError as e:
            return f"Export failed: {e}"
        if not response.pages:
            return "Export failed: the canvas has no pages."

        path = await asyncio.to_thread(export_pdf_to_file, response.pages, output_path)
        if next_dir is not None:
            self.export_dir = str(next_dir)
        return f"PDF exported to: {path}"

    async def _save(self, args: str) -> str:
        await self.sessions.save()
        info = self.sessions.active_info
        return f'Canvas "{info.name}" saved.' if info else "Canvas saved."

    async def _model(self, args: str) -> str:
        backend = self.engine.backend
        if not args:
            return "\n".join(
                [
                    f"Current: {_describe(backend)}",
                    "Backends: " + ", ".join(list_backends()),
                    "Use /model <backend> [model] or /model <model>.",
                ]
            )
        if self.settings is None:
            return "Model switching is not available in this session."
        if self.engine.in_turn:
            return "Cannot switch models while a turn is running."

        first, _, rest = args.partition(" ")
        if first.lower() in list_backends():
            name, model = first.lower(), rest.strip()
        else:
            name, model = backend.name, args
        settings = self.settings.model_copy(update={"backend": name, "model": model})
        replacement = create_backend(name, settings)

        self.engine.backend = replacement
        self.settings = settings
        if hasattr(backend, "close"):
            await backend.close()
        logger.info("Switched backend to %s", _describe(replacement))
        return f"Switched to {_describe(replacement)}."

    async def _context(self, args: str) -> str:
        return format_context(self.engine)

    async def _compact(self, args: str) -> str:
        conversation = self.engine.conversation
        if len(conversation) <= self.keep_recent:
            return "Conversation is too short to compact."

        before = conversation.estimate_context().total_tokens
        try:
            summary = await summarize_conversation(self.engine.backend, conversation)
        except Exception as e:
            logger.warning("Summarization failed: %s", e)
            return f"Compact failed: {e}"
        if not summary:
            return "Compact failed: the model returned an empty summary."

        conversation.compact(summary, self.keep_recent)
        after = conversation.estimate_context().total_tokens
        return (
            f"Conversation compacted. ~{max(0, before - after):,} tokens reclaimed.\n\n"
            f"Summary preserved:\n{summary}"
        )

    async def _clear(self, args: str) -> str:
        self.engine.conversation.clear()
        return "Conversation cleared."
