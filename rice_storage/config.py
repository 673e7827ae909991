"""
Configuration for the RiceDB storage client.

Settings come from a JSON file (``StorageConfig.load``) or from the
environment, optionally seeded from a ``.env`` file
(``StorageConfig.from_env``). Either result is passed to
``RiceDBClient.from_config``.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .errors import ValidationError
from .storage_backend import TransportKind

DEFAULT_GRPC_PORT = 50051
DEFAULT_HTTP_PORT = 3000


@dataclass
class StorageConfig:
    """
    Storage client settings.

    ``grpc_port`` is the port named in STORAGE_INSTANCE_URL; the HTTP
    fallback uses ``http_port``.
    """

    enabled: bool = True
    host: str = "localhost"
    transport: TransportKind = TransportKind.AUTO
    grpc_port: int = DEFAULT_GRPC_PORT
    http_port: int = DEFAULT_HTTP_PORT
    auth_token: str | None = None
    run_id: str | None = None
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        try:
            self.transport = TransportKind(self.transport)
        except ValueError:
            raise ValidationError(f"Unknown transport: {self.transport!r}") from None
        for name in ("grpc_port", "http_port"):
            port = getattr(self, name)
            if not 0 < int(port) < 65536:
                raise ValidationError(f"{name} out of range: {port}")
            setattr(self, name, int(port))
        if self.timeout_seconds <= 0:
            raise ValidationError(f"timeout_seconds must be positive, got {self.timeout_seconds}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StorageConfig:
        """Build from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: Path | str | None = None) -> StorageConfig:
        """
        Load configuration from a JSON file.

        A top-level ``storage`` section is used when present, otherwise the
        whole document. A missing file yields the defaults.
        """
        if path is None:
            path = Path.cwd() / "rice.config.json"
        path = Path(path)

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        section = data.get("storage", data)
        return cls.from_dict(section)

    @classmethod
    def from_env(
        cls,
        env_file: Path | str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> StorageConfig:
        """
        Read settings from environment variables.

        Variables: STORAGE_INSTANCE_URL (``host[:port]``, gRPC port),
        STORAGE_HTTP_PORT, STORAGE_AUTH_TOKEN, STORAGE_RUN_ID,
        STORAGE_TRANSPORT, STORAGE_TIMEOUT.

        Args:
            env_file: .env file loaded first (existing variables win)
            environ: Mapping to read instead of os.environ
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(env_file)
        env = os.environ if environ is None else environ

        host, grpc_port = parse_instance_url(
            env.get("STORAGE_INSTANCE_URL") or env.get("RICEDB_HOST") or "localhost"
        )
        return cls(
            host=host,
            transport=env.get("STORAGE_TRANSPORT", TransportKind.AUTO.value),
            grpc_port=grpc_port,
            http_port=_int_env(env, "STORAGE_HTTP_PORT", DEFAULT_HTTP_PORT),
            auth_token=env.get("STORAGE_AUTH_TOKEN") or None,
            run_id=env.get("STORAGE_RUN_ID") or None,
            timeout_seconds=_float_env(env, "STORAGE_TIMEOUT", 30.0),
        )


def parse_instance_url(url: str, default_port: int = DEFAULT_GRPC_PORT) -> tuple[str, int]:
    """Split ``host[:port]`` into host and port."""
    host, sep, port = url.strip().rpartition(":")
    if not sep:
        return url.strip(), default_port
    try:
        return host, int(port)
    except ValueError:
        raise ValidationError(f"Invalid port in instance URL: {url!r}") from None


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}") from None


__all__ = ["StorageConfig", "parse_instance_url"]
