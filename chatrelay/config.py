"""Settings via pydantic-settings with CHATRELAY_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.

Supplier and tool-server tables are complex fields, so they are read as JSON
from the environment (e.g. CHATRELAY_SUPPLIERS='{"deepseek": {...}}').
"""

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SupplierConfig(BaseModel):
    """An OpenAI-compatible provider endpoint."""

    base_url: str
    api_key: str = ""


class McpServerConfig(BaseModel):
    """A tool server reachable over streamable HTTP or stdio."""

    url: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    active: bool = True

    @model_validator(mode="after")
    def _validate_transport(self) -> "McpServerConfig":
        if not self.url and not self.command:
            raise ValueError("tool server needs either url or command")
        return self


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATRELAY_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("chatrelay", validation_alias="DB_USER")
    db_password: str = Field("chatrelay_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("chatrelay", validation_alias="DB_NAME")
    # Full URL override, e.g. sqlite+aiosqlite:///./chatrelay.db
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"
    locale: Literal["en", "zh"] = "en"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds, local models can be slow to load

    # Local backend (Ollama wire protocol)
    local_supplier: str = "ollama"
    ollama_base_url: str = "http://localhost:11434"

    # OpenAI-compatible suppliers, keyed by supplier name
    suppliers: dict[str, SupplierConfig] = Field(default_factory=dict)

    # Tool servers, keyed by server name
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    max_tool_rounds: int = 10

    # Capability table (matched case-insensitively against model names)
    reasoning_families: list[str] = Field(default_factory=lambda: ["deepseek"])
    reasoning_temperature: float = 0.6
    inline_document_families: list[str] = Field(default_factory=lambda: ["qwen"])
    vision_markers: list[str] = Field(default_factory=lambda: ["vision"])
    compat_vision_markers: list[str] = Field(default_factory=lambda: ["-vl"])
    compat_non_vision_families: list[str] = Field(
        default_factory=lambda: ["qwen", "deepseek", "qwq", "code", "phi", "gemma"]
    )
    # JSON list of {"name", "full_name", "capability": [...]} for local models
    ollama_model_list: str = "resources/ollama_model.json"

    # Context window lookup (model family -> tokens)
    context_lengths: dict[str, int] = Field(default_factory=dict)
    default_context_length: int = 4096

    # Collaborators
    agents_dir: str = "data/agents"
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    web_search_count: int = 5

    @model_validator(mode="after")
    def _validate_local_supplier(self) -> "Settings":
        if self.local_supplier in self.suppliers:
            raise ValueError(
                f"supplier '{self.local_supplier}' is reserved for the local backend"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
