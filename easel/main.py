"""Easel entry point: interactive chat in the terminal.

Initializes all components and runs a line-oriented REPL:
  Settings -> Backend -> SessionManager -> ToolRegistry -> ConversationEngine -> REPL

Lines starting with "/" go to the command router; everything else is a
conversation turn whose text is streamed to stdout as it arrives.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from easel.commands import CommandRouter
from easel.config import Settings
from easel.conversation import Conversation, ConversationEngine
from easel.errors import BackendError, EaselError
from easel.llm import StreamEvent, create_backend
from easel.skills import load_skills
from easel.tools import build_registry
from easel.workspace import SessionManager

logger = logging.getLogger(__name__)

BUNDLED_PROMPT = Path(__file__).parent / "prompts" / "system.md"
CONTEXT_FILENAME = "EASEL.md"
QUIT_COMMANDS = {"/quit", "/exit"}


def load_system_prompt(settings: Settings) -> str:
    """System prompt from ``system_prompt_path`` (or the bundled one).

    An EASEL.md in the notes directory is appended as extra context.
    """
    path = Path(settings.system_prompt_path).expanduser() if settings.system_prompt_path else BUNDLED_PROMPT
    prompt = path.read_text(encoding="utf-8")

    context_file = Path(settings.notes_dir or ".").expanduser() / CONTEXT_FILENAME
    if context_file.is_file():
        context = context_file.read_text(encoding="utf-8").strip()
        if context:
            prompt = f"{prompt}\n\n---\n## {CONTEXT_FILENAME}\n{context}"
    return prompt


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Backend - streaming LLM client
    2. SessionManager - the one open canvas
    3. ToolRegistry - built-in catalog
    4. ConversationEngine - turn loop over a fresh Conversation
    5. CommandRouter - slash commands and structure skills, owns the export directory
    """
    backend = create_backend(settings.backend, settings)
    sessions = SessionManager(settings)

    # export_pdf writes where /export last pointed
    registry = build_registry(settings, sessions, lambda: commands.export_dir)
    engine = ConversationEngine(
        backend,
        registry,
        conversation=Conversation(),
        system_prompt=load_system_prompt(settings),
        max_tool_rounds=settings.max_tool_rounds,
    )
    commands = CommandRouter(
        sessions,
        engine,
        export_dir=settings.export_dir,
        keep_recent=settings.compact_keep_recent,
        export_timeout=settings.export_timeout,
        skills=load_skills(settings.notes_dir or "."),
        settings=settings,
    )
    logger.info(
        "Components ready: backend=%s tools=%s skills=%d",
        backend.name,
        ",".join(engine.registry.names()),
        len(commands.skills),
    )
    return {
        "backend": backend,
        "sessions": sessions,
        "engine": engine,
        "commands": commands,
    }


async def shutdown_components(components: dict) -> None:
    """Close the open canvas (saving it) and the backend client."""
    sessions = components.get("sessions")
    if sessions is not None:
        try:
            await sessions.close()
        except Exception:
            logger.exception("Closing canvas session failed")

    # /model may have replaced the backend the components started with
    engine = components.get("engine")
    backend = engine.backend if engine is not None else components.get("backend")
    if backend is not None and hasattr(backend, "close"):
        await backend.close()


def render_event(event: StreamEvent) -> None:
    if event.type == "text_delta":
        print(event.text, end="", flush=True)
    elif event.type == "tool_start":
        print(f"\n[{event.tool_name}...]", flush=True)
    elif event.type == "tool_end" and event.is_error:
        first_line = event.text.splitlines()[0] if event.text else "error"
        print(f"[{event.tool_name} failed: {first_line}]", flush=True)


async def repl(components: dict) -> None:
    engine: ConversationEngine = components["engine"]
    commands: CommandRouter = components["commands"]

    print("Easel ready. Type /help for commands, /quit to exit.")
    while True:
        try:
            line = (await asyncio.to_thread(input, "\n> ")).strip()
        except EOFError:
            break
        if not line:
            continue
        if line.lower() in QUIT_COMMANDS:
            break

        overlay = ""
        if commands.is_command(line):
            skill_turn = commands.skill_turn(line)
            if skill_turn is None:
                print(await commands.handle(line))
                continue
            line, overlay = skill_turn

        try:
            async for event in engine.stream_turn(line, overlay):
                render_event(event)
            print()
        except BackendError as e:
            print(f"\nError: {e}")


async def run(settings: Settings) -> None:
    components = await create_components(settings)
    try:
        await repl(components)
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point: parse settings, configure logging, run the REPL."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting Easel with backend %s", settings.backend)

    if settings.backend == "anthropic" and not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set; chat turns will fail")
    if settings.backend == "openai" and not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; chat turns will fail")

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass
    except EaselError as e:
        logger.error("Startup failed: %s", e)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
