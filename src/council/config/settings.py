"""
Configuration system built on Pydantic Settings.

- Type-safe nested configuration with defaults
- Environment variable overrides (COUNCIL_ prefix, ``__`` for nesting)
- One model endpoint per agent role
- Per-language test toolchains for the execution harness
"""

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROLES = ("planner", "context", "generator", "refiner", "reviewer")


class ModelEndpoint(BaseModel):
    """Configuration for a model endpoint serving one agent role."""

    name: str = Field(..., description="Model name served behind the gateway")
    base_url: str = Field("http://localhost:8080", description="Base URL of the model gateway")
    api_key: str | None = Field(None, description="Bearer token if required")
    timeout: float = Field(120.0, gt=0, description="Request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class ModelsConfig(BaseModel):
    """Model endpoints, one per role."""

    planner: ModelEndpoint = Field(default_factory=lambda: ModelEndpoint(name="council-planner"))
    context: ModelEndpoint = Field(default_factory=lambda: ModelEndpoint(name="council-context"))
    generator: ModelEndpoint = Field(
        default_factory=lambda: ModelEndpoint(name="council-generator")
    )
    refiner: ModelEndpoint = Field(default_factory=lambda: ModelEndpoint(name="council-refiner"))
    reviewer: ModelEndpoint = Field(default_factory=lambda: ModelEndpoint(name="council-reviewer"))

    @model_validator(mode="before")
    @classmethod
    def default_model_names(cls, data: Any) -> Any:
        """Partial endpoint overrides keep the role's default model name."""
        if isinstance(data, dict):
            for role in ROLES:
                endpoint = data.get(role)
                if isinstance(endpoint, dict) and "name" not in endpoint:
                    data = {**data, role: {"name": f"council-{role}", **endpoint}}
        return data

    def for_role(self, role: str) -> ModelEndpoint | None:
        if role not in ROLES:
            return None
        return getattr(self, role)


class GatewayConfig(BaseModel):
    """Retry policy for transient gateway failures."""

    max_attempts: int = Field(4, gt=0)
    backoff_multiplier: float = Field(0.5, ge=0)
    backoff_min: float = Field(0.5, ge=0)
    backoff_max: float = Field(8.0, ge=0)


class AgentConfig(BaseModel):
    """Configuration for role agent behavior."""

    temperature: float = Field(0.1, ge=0.0, le=2.0)
    parse_retries: int = Field(1, ge=0, description="Extra attempts when output fails its schema")
    max_context_chars: int = Field(6000, gt=0)


class OrchestratorConfig(BaseModel):
    """Configuration for the pipeline state machine."""

    max_attempts: int = Field(3, gt=0, description="Test executions allowed per language")
    max_parallel_generations: int = Field(4, gt=0)
    max_steps: int = Field(50, gt=0)


class ToolchainConfig(BaseModel):
    """How to run one language's test suite in an isolated workspace.

    ``{workspace}`` and ``{report}`` placeholders in commands are expanded.
    """

    extensions: list[str]
    test_patterns: list[str]
    setup_commands: list[list[str]] = Field(default_factory=list)
    test_command: list[str]
    report_file: str | None = None
    failure_exit_codes: list[int] = Field(default_factory=lambda: [1])
    support_files: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(300.0, gt=0)


_JEST_CONFIG = (
    "module.exports = { preset: 'ts-jest', testEnvironment: 'node', "
    "testMatch: ['**/*.test.ts'] };\n"
)


def _default_toolchains() -> dict[str, ToolchainConfig]:
    return {
        "python": ToolchainConfig(
            extensions=[".py"],
            test_patterns=["test_*.py", "*_test.py"],
            test_command=["python", "-m", "pytest", "-q", "--junitxml={report}"],
            report_file="report.xml",
        ),
        "typescript": ToolchainConfig(
            extensions=[".ts"],
            test_patterns=["*.test.ts"],
            setup_commands=[
                [
                    "npm",
                    "install",
                    "--silent",
                    "--no-audit",
                    "--no-fund",
                    "jest",
                    "ts-jest",
                    "typescript",
                    "@types/jest",
                    "jest-junit",
                ]
            ],
            test_command=["npx", "jest", "--ci", "--reporters=default", "--reporters=jest-junit"],
            report_file="report.xml",
            support_files={"jest.config.js": _JEST_CONFIG},
            env={"JEST_JUNIT_OUTPUT_FILE": "{report}"},
        ),
        "go": ToolchainConfig(
            extensions=[".go"],
            test_patterns=["*_test.go"],
            test_command=["go", "test", "-v", "./..."],
            support_files={"go.mod": "module council/generated\n\ngo 1.21\n"},
        ),
    }


class HarnessConfig(BaseModel):
    """Configuration for the test execution harness."""

    toolchains: dict[str, ToolchainConfig] = Field(default_factory=_default_toolchains)
    workspace_root: Path | None = Field(None, description="Parent for per-attempt temp dirs")
    keep_workspaces: bool = Field(False)
    output_tail_chars: int = Field(4000, gt=0)


class StorageConfig(BaseModel):
    """Configuration for the artifact store and run records."""

    root: Path = Field(Path("./data/council"))


class PublisherConfig(BaseModel):
    """Configuration for the change publisher."""

    directory: Path = Field(Path("./data/changesets"))


class ObservabilityConfig(BaseModel):
    """Configuration for observability and monitoring."""

    enable_tracing: bool = Field(True)
    enable_metrics: bool = Field(True)
    log_level: str = Field("INFO")

    # OpenTelemetry configuration
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("council")
    service_version: str = Field("0.3.0")


class APIConfig(BaseModel):
    """Configuration for API server."""

    host: str = Field("0.0.0.0")
    port: int = Field(8000, gt=0, le=65535)
    reload: bool = Field(False)
    workers: int = Field(1, gt=0)
    enable_cors: bool = Field(True)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="COUNCIL_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    agents: AgentConfig = Field(default_factory=AgentConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    harness: HarnessConfig = Field(default_factory=HarnessConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    publisher: PublisherConfig = Field(default_factory=PublisherConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    debug: bool = Field(False)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_gateway_backoff(self) -> "Settings":
        if self.gateway.backoff_min > self.gateway.backoff_max:
            raise ValueError("gateway.backoff_min must not exceed gateway.backoff_max")
        return self

    def supported_languages(self) -> set[str]:
        return set(self.harness.toolchains)

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
