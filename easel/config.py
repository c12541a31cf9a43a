"""Settings via pydantic-settings with EASEL_ env prefix.

Vendor credentials use validation_alias to read the same unprefixed env
vars (ANTHROPIC_API_KEY, OPENAI_API_KEY, OLLAMA_HOST) that the vendor
SDKs and CLIs use, so a single .env file drives everything.
"""

from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EASEL_", env_file=".env")

    log_level: str = "info"

    # LLM backend
    backend: Literal["anthropic", "openai", "ollama", "mock"] = "anthropic"
    model: str = ""  # empty -> backend default
    max_tokens: int = 4096
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com"
    ollama_base_url: str = Field(
        "http://localhost:11434",
        validation_alias=AliasChoices("EASEL_OLLAMA_BASE_URL", "OLLAMA_HOST"),
    )
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    system_prompt_path: str = ""  # empty -> bundled prompt

    # Turn loop. None keeps the loop unbounded.
    max_tool_rounds: int | None = None
    compact_keep_recent: int = 4

    # Workspace (companion canvas)
    workspace_port: int = 3000
    workspace_bind_host: str = "0.0.0.0"
    public_host: str = ""  # empty -> detected LAN address
    canvas_dir: str = "~/.easel/canvases"
    export_dir: str = "~/.easel/exports"
    snapshot_timeout: float = 15.0
    export_timeout: float = 30.0
    autosave_delay: float = 2.0
    # Fail in-flight peer requests as soon as the peer drops instead of
    # waiting for their timeout.
    fail_pending_on_disconnect: bool = False

    # File tools
    notes_dir: str = ""

    # MCP
    mcp_host: str = "127.0.0.1"
    mcp_port: int = 8765
    mcp_canvas: str = ""  # canvas to open at startup, empty -> none

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_tool_rounds is not None and self.max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1 (or unset for no limit)")
        if self.snapshot_timeout <= 0 or self.export_timeout <= 0:
            raise ValueError("snapshot_timeout and export_timeout must be positive")
        if self.compact_keep_recent < 0:
            raise ValueError("compact_keep_recent must be >= 0")
        return self
