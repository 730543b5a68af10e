"""Configuration for mailforge.

Two sources:
- mailforge.yaml (optional, project root): build defaults
- config.json (credentials): aws / litmus / mail sections, read once per
  publish pipeline and never written
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from mailforge.exceptions import ConfigurationError

DEFAULT_PROJECT = "default"
CONFIG_FILE = "mailforge.yaml"
CREDENTIALS_FILE = "config.json"


class BuildSettings(BaseModel):
    """Settings for one build invocation."""

    root: Path = Field(default_factory=Path.cwd, description="Repository root")
    project: str = Field(default=DEFAULT_PROJECT, description="Project folder name")
    production: bool = Field(default=False, description="Inline and strip dead rules")
    recipient: str | None = Field(
        default=None, description="Recipient override for the mail pipeline"
    )

    projects_dir: str = "projects"
    dist_dir: str = "dist"
    include_paths: list[str] = Field(
        default_factory=lambda: ["scss"],
        description="Shared stylesheet library directories, relative to root",
    )
    default_layout: str = "default"
    stylesheet: str = "app.scss"
    bundle: str = "app"
    debounce: float = Field(default=0.3, description="Watcher coalescing window (s)")
    host: str = "localhost"
    port: int = 3000
    credentials: str = CREDENTIALS_FILE

    @property
    def source_dir(self) -> Path:
        return self.root / self.projects_dir / self.project

    @property
    def output_dir(self) -> Path:
        return self.root / self.dist_dir / self.project

    @property
    def style_dir(self) -> Path:
        return self.source_dir / "assets" / "scss"

    @property
    def image_dir(self) -> Path:
        return self.source_dir / "assets" / "img"

    @property
    def library_dirs(self) -> list[Path]:
        return [self.root / p for p in self.include_paths]

    @property
    def stylesheet_href(self) -> str:
        return f"css/{self.bundle}.css"

    @property
    def credentials_path(self) -> Path:
        return self.root / self.credentials


class AwsConfig(BaseModel):
    """Object-store credentials."""

    model_config = {"extra": "allow"}

    key: str = Field(validation_alias=AliasChoices("key", "accessKeyId"))
    secret: str = Field(validation_alias=AliasChoices("secret", "secretAccessKey"))
    region: str = "us-east-1"
    bucket: str = Field(description="Target bucket")
    endpoint: str | None = Field(
        default=None, description="Override for S3-compatible stores"
    )
    url: str | None = Field(default=None, description="Public base URL for images")

    @model_validator(mode="before")
    @classmethod
    def flatten_params(cls, data: Any) -> Any:
        """Accept the bucket nested as params.Bucket (awspublish layout)."""
        if isinstance(data, dict) and "bucket" not in data:
            params = data.get("params")
            if isinstance(params, dict) and "Bucket" in params:
                data = {**data, "bucket": params["Bucket"]}
        return data


class LitmusConfig(BaseModel):
    """Render-test service credentials."""

    model_config = {"extra": "allow"}

    username: str
    password: str
    url: str
    applications: list[str] = Field(default_factory=list)


class SmtpAuth(BaseModel):
    user: str
    password: str = Field(alias="pass")

    model_config = {"populate_by_name": True}


class SmtpConfig(BaseModel):
    host: str
    port: int = 587
    auth: SmtpAuth | None = None
    secure: bool = Field(default=False, alias="secureConnection")
    starttls: bool = Field(default=True, description="Upgrade plain connections with STARTTLS")

    model_config = {"populate_by_name": True}


class MailConfig(BaseModel):
    """Sample e-mail defaults."""

    model_config = {"populate_by_name": True}

    to: list[str] = Field(default_factory=list)
    sender: str = Field(default="mailforge@localhost", alias="from")
    subject: str = "Test Email"
    smtp: SmtpConfig | None = None


class Credentials(BaseModel):
    """Contents of config.json."""

    aws: AwsConfig | None = None
    litmus: LitmusConfig | None = None
    mail: MailConfig | None = None

    @property
    def image_base_url(self) -> str | None:
        if self.aws is not None and self.aws.url:
            return self.aws.url
        return None


def load_settings(root: Path, **overrides: Any) -> BuildSettings:
    """Load mailforge.yaml from root (if any) and apply overrides.

    Overrides whose value is None are ignored so unset CLI flags keep
    the file defaults.
    """
    data: dict[str, Any] = {}
    path = root / CONFIG_FILE
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

    data.update({k: v for k, v in overrides.items() if v is not None})
    data["root"] = root
    return BuildSettings(**data)


def load_credentials(path: Path) -> Credentials:
    """Read config.json.

    Raises:
        ConfigurationError: If the file is missing, is not JSON, or does
            not match the expected sections.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(str(path), f"cannot read credentials ({e.strerror})") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(str(path), f"invalid JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be an object")

    try:
        return Credentials.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(path), f"invalid credentials: {e}") from e
