"""
Configuration management for MCP Profile Proxy.

A profile is a JSON or YAML file named ``config.<profile>.json`` (or
``.yaml``/``.yml``) in the config directory, listing the backend servers
that make up that profile. Environment variables are expanded and every
backend is validated via Pydantic when the profile is loaded.
"""

from __future__ import annotations

import json
import os
import re
import shlex
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from mcp_proxy.errors import ConfigLoadError

PROFILE_SUFFIXES = (".json", ".yaml", ".yml")


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports both ${VAR} and $VAR syntax. Unknown variables are left as-is.
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replacer, value)


class BackendSpec(BaseModel):
    """Configuration for a single backend MCP server."""

    id: str = Field(..., min_length=1, description="Unique identifier within the profile")
    description: str = Field(default="", description="Human-readable description")

    # Transport configuration (exactly one must be set)
    command: str | None = Field(default=None, description="Executable for stdio transport")
    args: list[str] = Field(default_factory=list, description="Arguments for the executable")
    url: str | None = Field(default=None, description="URL for SSE or streamable HTTP transport")

    # Optional settings
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    headers: dict[str, str] = Field(default_factory=dict, description="HTTP headers")
    cwd: str | None = Field(default=None, description="Working directory for stdio")
    enabled: bool = Field(default=True, description="Whether this backend is activated")

    @field_validator("command", "url", "cwd", mode="before")
    @classmethod
    def expand_env(cls, v: str | None) -> str | None:
        """Expand environment variables in string fields."""
        if v is None:
            return None
        return expand_env_vars(str(v))

    @field_validator("args", mode="before")
    @classmethod
    def expand_args(cls, v: list[Any] | None) -> list[str]:
        """Expand environment variables in each argument."""
        if v is None:
            return []
        return [expand_env_vars(str(arg)) for arg in v]

    @field_validator("env", "headers", mode="before")
    @classmethod
    def expand_dict_values(cls, v: dict[str, Any] | None) -> dict[str, str]:
        """Expand environment variables in dict values."""
        if v is None:
            return {}
        return {k: expand_env_vars(str(val)) for k, val in v.items()}

    @model_validator(mode="after")
    def validate_transport(self) -> BackendSpec:
        """Ensure exactly one transport is configured."""
        has_command = bool(self.command)
        has_url = bool(self.url)

        if not has_command and not has_url:
            raise ValueError(f"Backend '{self.id}' must have either 'command' or 'url'")
        if has_command and has_url:
            raise ValueError(f"Backend '{self.id}' must not have both 'command' and 'url'")

        return self

    @property
    def transport_type(self) -> Literal["stdio", "http", "sse"]:
        """Determine the transport type for this backend."""
        if self.command:
            return "stdio"
        elif self.url and self.url.rstrip("/").endswith("/sse"):
            return "sse"
        else:
            return "http"

    @property
    def command_list(self) -> list[str] | None:
        """Full argv for the subprocess.

        A command given as a single string with spaces and no ``args`` is
        split with shell rules, so ``"npx -y server"`` works as expected.
        """
        if not self.command:
            return None
        if self.args:
            return [self.command, *self.args]
        return shlex.split(self.command)


class ProfileConfig(BaseModel):
    """A named set of backends that are activated together."""

    name: str = Field(..., min_length=1, description="Profile name")
    backends: dict[str, BackendSpec] = Field(
        default_factory=dict, description="Backend specs keyed by backend id"
    )

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any] | None) -> ProfileConfig:
        """Create a profile from a parsed descriptor.

        Accepts ``mcpServers``, ``backends`` or ``servers`` as the key
        holding the backend table. The backend id is taken from the key.
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("profile descriptor must be a mapping")

        backends_raw = data.get("mcpServers") or data.get("backends") or data.get("servers") or {}
        if not isinstance(backends_raw, dict):
            raise ValueError("backend table must be a mapping of id to spec")

        backends: dict[str, BackendSpec] = {}
        for backend_id, backend_data in backends_raw.items():
            if not isinstance(backend_data, dict):
                raise ValueError(f"Backend '{backend_id}' must be a mapping")
            backends[backend_id] = BackendSpec(**{**backend_data, "id": backend_id})

        return cls(name=name, backends=backends)

    @classmethod
    def from_file(cls, name: str, path: str | Path) -> ProfileConfig:
        """Load a profile from a JSON or YAML file.

        Raises:
            ConfigLoadError: If the file is missing, unparsable or invalid
        """
        path = Path(path)
        try:
            with path.open() as f:
                if path.suffix == ".json":
                    raw = json.load(f)
                else:
                    raw = yaml.safe_load(f)
            return cls.from_dict(name, raw)
        except FileNotFoundError as e:
            raise ConfigLoadError(name, f"config file not found: {path}") from e
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigLoadError(name, f"cannot parse {path}: {e}") from e
        except (ValidationError, ValueError) as e:
            raise ConfigLoadError(name, f"invalid config {path}: {e}") from e

    def get_enabled_backends(self) -> dict[str, BackendSpec]:
        """Return only enabled backends, preserving file order."""
        return {bid: spec for bid, spec in self.backends.items() if spec.enabled}


def find_profile_file(name: str, config_dir: str | Path) -> Path | None:
    """Return the first ``config.<name>.*`` file that exists, if any."""
    for suffix in PROFILE_SUFFIXES:
        candidate = Path(config_dir) / f"config.{name}{suffix}"
        if candidate.exists():
            return candidate
    return None


def load_profile(name: str, config_dir: str | Path = ".") -> ProfileConfig:
    """Load the profile called *name* from *config_dir*.

    Raises:
        ConfigLoadError: If no file exists for the profile or it is invalid
    """
    if not name or "/" in name or "\\" in name or name.startswith("."):
        raise ConfigLoadError(name, "invalid profile name")

    path = find_profile_file(name, config_dir)
    if path is None:
        expected = Path(config_dir) / f"config.{name}.json"
        raise ConfigLoadError(name, f"config file not found: {expected}")
    return ProfileConfig.from_file(name, path)


class ProxyConfig(BaseModel):
    """Process-level settings for the proxy."""

    profile: str = Field(default="default", description="Profile activated at startup")
    mode: Literal["stdio", "sse"] = Field(default="stdio", description="Caller-facing transport")
    host: str = Field(default="localhost", description="Host to bind to in SSE mode")
    port: int = Field(default=3000, ge=1, le=65535, description="Port to listen on in SSE mode")
    config_dir: Path = Field(default_factory=Path.cwd, description="Directory of profile files")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging verbosity"
    )
    request_timeout: float = Field(
        default=60.0, gt=0, description="Seconds to wait for a backend response"
    )

    def load_profile(self, name: str) -> ProfileConfig:
        """Load *name* from this config's profile directory."""
        return load_profile(name, self.config_dir)
