"""Relay and client settings.

Defaults can be overridden from the environment with the ``SPLITSIGNAL_``
prefix (``SPLITSIGNAL_PORT=9000``) and then from command-line flags.
"""
import os
from dataclasses import dataclass, field, fields
from typing import List, Mapping, Optional

ENV_PREFIX = "SPLITSIGNAL_"

DEFAULT_BROADCASTER_PATH = "/_server"
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _coerce(value: str, current):
    if isinstance(current, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        return _split_list(value)
    return value


class _EnvSettings:
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides):
        environ = os.environ if environ is None else environ
        settings = cls()
        for f in fields(settings):
            key = ENV_PREFIX + f.name.upper()
            if key in environ:
                setattr(settings, f.name, _coerce(environ[key], getattr(settings, f.name)))
        for name, value in overrides.items():
            if value is not None:
                setattr(settings, name, value)
        return settings


@dataclass
class RelaySettings(_EnvSettings):
    host: str = "0.0.0.0"
    port: int = 8080
    broadcaster_path: str = DEFAULT_BROADCASTER_PATH
    # CIDR networks allowed to claim the broadcaster path; empty disables the check
    allowed_networks: List[str] = field(default_factory=list)
    log_level: str = "INFO"


@dataclass
class ClientSettings(_EnvSettings):
    url: str = "ws://localhost:8080/"
    broadcaster_path: str = DEFAULT_BROADCASTER_PATH
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    log_level: str = "INFO"

    @property
    def broadcaster_url(self) -> str:
        return self.url.rstrip("/") + self.broadcaster_path
