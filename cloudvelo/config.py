"""Loading of the combined server and cloud configuration."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Callable

import yaml


class ConfigError(ValueError):
    """Raised when a configuration cannot be loaded or is invalid."""


@dataclass
class Tool:
    """An approved third party tool."""

    name: str = ""
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "url": self.url}


_SCALAR_FIELDS: dict[str, type] = {
    "username": str,
    "password": str,
    "api_key": str,
    "cloud_id": str,
    "disable_ssl_security": bool,
    "root_cert": str,
    "index": str,
    "aws_region": str,
    "credentials_key": str,
    "credentials_secret": str,
    "endpoint": str,
    "no_verify_cert": bool,
    "bucket": str,
    "s3_part_size": int,
    "foreman_interval_seconds": int,
}

_UNSIGNED_FIELDS = frozenset({"s3_part_size"})


def _check_scalar(name: str, value: Any, kind: type) -> Any:
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"Cloud.{name}: expected an integer, got {value!r}")
        if name in _UNSIGNED_FIELDS and value < 0:
            raise ConfigError(f"Cloud.{name}: must not be negative")
        return value
    if not isinstance(value, kind):
        raise ConfigError(
            f"Cloud.{name}: expected {kind.__name__}, got {value!r}")
    return value


def _parse_tool(item: Any) -> Tool:
    if not isinstance(item, dict):
        raise ConfigError(f"Cloud.approved_tools: invalid entry {item!r}")
    unknown = set(item) - {"name", "url"}
    if unknown:
        raise ConfigError(
            f"Cloud.approved_tools: unknown fields {sorted(unknown)}")
    name = item.get("name") or ""
    url = item.get("url") or ""
    if not isinstance(name, str) or not isinstance(url, str):
        raise ConfigError(f"Cloud.approved_tools: invalid entry {item!r}")
    return Tool(name=name, url=url)


@dataclass
class ElasticConfiguration:
    """Settings for the elastic backend and the S3 file store."""

    username: str = ""
    password: str = ""
    api_key: str = ""
    addresses: list[str] = field(default_factory=list)
    cloud_id: str = ""
    disable_ssl_security: bool = False
    root_cert: str = ""
    # The name of the index to use.
    index: str = ""
    aws_region: str = ""
    credentials_key: str = ""
    credentials_secret: str = ""
    endpoint: str = ""
    no_verify_cert: bool = False
    bucket: str = ""
    s3_part_size: int = 0
    foreman_interval_seconds: int = 0
    approved_tools: list[Tool] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElasticConfiguration":
        known = set(_SCALAR_FIELDS) | {"addresses", "approved_tools"}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Cloud: unknown fields {sorted(unknown)}")

        kwargs: dict[str, Any] = {}
        for name, kind in _SCALAR_FIELDS.items():
            value = data.get(name)
            if value is not None:
                kwargs[name] = _check_scalar(name, value, kind)

        addresses = data.get("addresses")
        if addresses is not None:
            if not isinstance(addresses, list) or not all(
                    isinstance(a, str) for a in addresses):
                raise ConfigError("Cloud.addresses: expected a list of strings")
            kwargs["addresses"] = list(addresses)

        tools = data.get("approved_tools")
        if tools is not None:
            if not isinstance(tools, list):
                raise ConfigError("Cloud.approved_tools: expected a list")
            kwargs["approved_tools"] = [_parse_tool(t) for t in tools]

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            name: getattr(self, name) for name in _SCALAR_FIELDS}
        result["addresses"] = list(self.addresses)
        result["approved_tools"] = [t.to_dict() for t in self.approved_tools]
        return result


@dataclass
class Config:
    """The server configuration plus the cloud specific section."""

    velo: dict[str, Any] = field(default_factory=dict)
    cloud: ElasticConfiguration = field(default_factory=ElasticConfiguration)

    @property
    def org_id(self) -> str:
        return self.velo.get("org_id", "") or ""

    def to_dict(self) -> dict[str, Any]:
        result = copy.deepcopy(self.velo)
        result["Cloud"] = self.cloud.to_dict()
        return result


def config_from_dict(data: Any) -> Config:
    """Build a Config from a plain mapping."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")
    velo = copy.deepcopy(data)
    cloud_data = velo.pop("Cloud", None)
    if cloud_data is None:
        cloud_data = {}
    if not isinstance(cloud_data, dict):
        raise ConfigError("Cloud section must be a mapping")
    return Config(velo=velo, cloud=ElasticConfiguration.from_dict(cloud_data))


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch to target, returning a new document."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


@dataclass
class ConfigLoader:
    """Loads a Config from text or a file, applying an optional JSON patch.

    ``validator`` receives the server part of the configuration and returns
    the validated version which replaces it.
    """

    filename: str = ""
    config_text: str = ""
    json_patch: str = ""
    validator: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    def apply_json_patch(self, config: Config) -> Config:
        try:
            patch = json.loads(self.json_patch)
        except ValueError as exc:
            raise ConfigError(f"Invalid merge patch: {exc}") from exc

        patched = merge_patch(config.to_dict(), patch)
        try:
            return config_from_dict(patched)
        except ConfigError as exc:
            raise ConfigError(
                f"Patched object produces an invalid config "
                f"({self.json_patch}): {exc}") from exc

    def _parse_yaml(self, text: str) -> Config:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid config: {exc}") from exc
        if data is None:
            data = {}
        return config_from_dict(data)

    def _finish(self, config: Config) -> Config:
        if self.json_patch:
            config = self.apply_json_patch(config)
        if self.validator is not None:
            config.velo = self.validator(copy.deepcopy(config.velo))
        return config

    def load_from_text(self) -> Config:
        return self._finish(self._parse_yaml(self.config_text))

    def load_filename(self) -> Config:
        try:
            with open(self.filename, encoding="utf-8") as fd:
                text = fd.read()
        except OSError as exc:
            raise ConfigError(
                f"Unable to read {self.filename}: {exc}") from exc
        return self._finish(self._parse_yaml(text))

    def load(self) -> Config:
        if self.config_text:
            return self.load_from_text()
        if self.filename:
            return self.load_filename()
        raise ConfigError("Unable to load config from anywhere")