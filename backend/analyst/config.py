"""
Application configuration and settings.

Settings come from environment variables (and `.env`). Provider topology,
prompts and response schemas live in the config directory as YAML/Markdown.
"""

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic_settings import BaseSettings

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Provider credentials
    gemini_api_key: str | None = None
    openrouter_api_key: str | None = None
    openrouter_site_url: str | None = None  # HTTP-Referer attribution
    openrouter_app_title: str | None = None  # X-Title attribution

    # Invocation
    request_timeout_sec: float = 120.0
    health_timeout_sec: float = 15.0
    retry_base_ms: int = 1000
    retry_cap_ms: int = 90_000
    retry_max_attempts: int = 6

    # Input shaping (keyword windows)
    transcript_safe_chars: int = 180_000
    keyword_window_radius: int = 1400
    keyword_max_windows: int = 60
    keyword_header_chars: int = 6000
    keyword_fallback_chars: int = 60_000

    # Validation policy: generic-opener and minimum-length checks on slide context
    strict_content_checks: bool = False

    # Paths
    config_dir: Path = DEFAULT_CONFIG_DIR
    prompts_dir: Path | None = None  # External prompts directory (overrides built-in)

    # Logging
    log_level: str = "INFO"
    log_format: str = "structured"  # "simple" or "structured"

    # Per-module log levels (optional overrides)
    log_level_ai_client: str | None = None
    log_level_extraction: str | None = None
    log_level_api: str | None = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def api_key_for(self, credential_env: str) -> str | None:
        """
        Resolve provider credential by its environment variable name.

        Args:
            credential_env: Variable name from provider topology (e.g. "GEMINI_API_KEY")

        Returns:
            Configured key or None
        """
        value = getattr(self, credential_env.lower(), None)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_prompt(
    feature: str,
    component: str,
    settings: Settings | None = None,
) -> str:
    """
    Load a prompt template with external folder priority.

    Lookup order (first found wins):
    1. prompts_dir/{feature}/{component}.md (external)
    2. config_dir/prompts/{feature}/{component}.md (built-in)

    Args:
        feature: Endpoint feature ("chatter", "points", "plotline", "thread")
        component: Prompt component ("system", "user")
        settings: Optional settings instance

    Returns:
        Prompt template content

    Raises:
        FileNotFoundError: If no matching prompt file is found
    """
    if settings is None:
        settings = get_settings()

    paths_to_check: list[Path] = []
    if settings.prompts_dir and settings.prompts_dir.exists():
        paths_to_check.append(settings.prompts_dir / feature / f"{component}.md")
    paths_to_check.append(settings.config_dir / "prompts" / feature / f"{component}.md")

    for path in paths_to_check:
        if path.exists():
            return path.read_text(encoding="utf-8")

    raise FileNotFoundError(
        f"Prompt not found: feature={feature}, component={component}. "
        f"Checked paths: {[str(p) for p in paths_to_check]}"
    )


def load_response_schema(feature: str, settings: Settings | None = None) -> dict:
    """
    Load response JSON schema from config/schemas/{feature}.yaml.

    Args:
        feature: Endpoint feature name
        settings: Optional settings instance

    Returns:
        Schema dictionary passed to providers as the response-shape constraint
    """
    if settings is None:
        settings = get_settings()

    schema_path = settings.config_dir / "schemas" / f"{feature}.yaml"
    with open(schema_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def load_providers_config(settings: Settings | None = None) -> dict:
    """
    Load provider topology from config/providers.yaml.

    Args:
        settings: Optional settings instance

    Returns:
        Raw providers configuration dictionary
    """
    if settings is None:
        settings = get_settings()

    providers_path = settings.config_dir / "providers.yaml"
    with open(providers_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)
