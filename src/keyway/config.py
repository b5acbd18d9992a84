"""Configuration types with environment variable support.

All settings can be configured via environment variables with the KEYWAY_ prefix.
Example: KEYWAY_PROVIDER_TIMEOUT=10 bounds every provider call to 10 seconds.

Providers are described in a YAML or TOML file:

    providers:
      - name: github
        type: github
        client_id: "..."
        client_secret: "..."
        callback_url: https://app.example.com/auth/callback?provider=github
      - name: okta
        type: oidc
        issuer_url: https://mycompany.okta.com
        client_id: "..."
        client_secret: "..."
        callback_url: https://app.example.com/auth/callback?provider=okta
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Provider types that need no endpoint configuration.
BUILTIN_PROVIDER_TYPES = frozenset({"faux", "github", "google", "twitter"})


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


@dataclass
class ProviderConfig:
    """Configuration for one registered provider.

    Built-in types (github, google, twitter, faux) know their endpoints.
    Generic types need them spelled out:

    - oauth2: authorize_url + token_url (profile_url for fetch_user)
    - oidc: issuer_url for discovery, or authorize_url + token_url
    - oauth1: request_token_url + authorize_url + token_url
    """

    name: str
    type: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    callback_url: str = ""
    issuer_url: str | None = None
    authorize_url: str | None = None
    token_url: str | None = None
    profile_url: str | None = None
    request_token_url: str | None = None
    scopes: list[str] = field(default_factory=list)

    def __post_init__(self):
        """Default the type to the name and validate required endpoints."""
        self.type = (self.type or self.name).lower()
        if self.type in BUILTIN_PROVIDER_TYPES:
            return

        has_manual = self.authorize_url and self.token_url
        if self.type == "oauth2" and not has_manual:
            raise ValueError(f"Provider {self.name!r} (oauth2) requires authorize_url + token_url")
        if self.type == "oidc" and not self.issuer_url and not has_manual:
            raise ValueError(
                f"Provider {self.name!r} (oidc) requires either issuer_url "
                "or authorize_url + token_url"
            )
        if self.type == "oauth1" and not (has_manual and self.request_token_url):
            raise ValueError(
                f"Provider {self.name!r} (oauth1) requires request_token_url, "
                "authorize_url and token_url"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConfig:
        """Create from a config file entry, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


def load_providers(path: str | Path) -> list[ProviderConfig]:
    """Read the ``providers`` list from a config file.

    Raises:
        ValueError: If an entry is malformed.
    """
    config = load_config_from_file(path)
    entries = config.get("providers") or []
    if not isinstance(entries, list):
        raise ValueError(f"'providers' must be a list in {path}")

    providers = []
    for entry in entries:
        if not isinstance(entry, dict) or "name" not in entry:
            raise ValueError(f"Each provider entry needs a 'name' in {path}")
        providers.append(ProviderConfig.from_dict(entry))
    return providers


class KeywaySettings(BaseSettings):
    """Settings for the authentication orchestrator and its session stores.

    Use get_settings() to get a cached instance.
    """

    model_config = SettingsConfigDict(
        env_prefix="KEYWAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    session_name: str = Field(
        default="_keyway_session",
        description="Cookie / store name holding the auth slot.",
    )
    secret_key: str | None = Field(
        default=None,
        repr=False,
        description="HMAC key for signed session cookies.",
    )
    session_max_age: int = Field(
        default=86400 * 30,
        ge=60,
        description="Lifetime of a stored session (seconds).",
    )
    cookie_path: str = Field(default="/", description="Session cookie path.")
    cookie_domain: str | None = Field(default=None, description="Session cookie domain.")
    cookie_secure: bool = Field(default=True, description="Send the session cookie over HTTPS only.")
    cookie_httponly: bool = Field(default=True, description="Hide the session cookie from scripts.")
    cookie_samesite: Literal["Lax", "Strict", "None"] = Field(
        default="Lax",
        description="SameSite attribute of the session cookie.",
    )
    provider_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for each provider network call (seconds).",
    )
    compress_sessions: bool = Field(
        default=True,
        description="Gzip marshalled sessions before storing them.",
    )
    state_bytes: int = Field(
        default=64,
        ge=16,
        description="Random bytes in each generated CSRF state token.",
    )

    def cookie_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for aiohttp ``set_cookie``."""
        return {
            "path": self.cookie_path,
            "domain": self.cookie_domain,
            "secure": self.cookie_secure,
            "httponly": self.cookie_httponly,
            "samesite": self.cookie_samesite,
        }

    def to_display_dict(self) -> dict[str, Any]:
        """Export current settings for display, with the secret masked."""
        data = self.model_dump()
        data["secret_key"] = "********" if self.secret_key else None
        return data


_settings: KeywaySettings | None = None


def get_settings() -> KeywaySettings:
    """Get the global settings instance.

    The instance reads environment variables once and is cached for the
    lifetime of the process. Call clear_settings() to reload (e.g. in tests).
    """
    global _settings
    if _settings is None:
        _settings = KeywaySettings()
    return _settings


def clear_settings() -> None:
    """Clear the cached settings."""
    global _settings
    _settings = None
