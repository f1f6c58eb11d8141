"""
Session configuration profiles.

Profiles live in ``configs/profiles.yaml`` next to this module; a different
file can be passed explicitly.  ``SCREENCAST_PROFILE`` selects the profile and
``SCREENCAST_STORE_URL`` overrides the store location of whichever profile is
loaded.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .signaling.room_code import MAX_LENGTH, MIN_LENGTH

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

ENV_PROFILE_VAR = "SCREENCAST_PROFILE"
ENV_STORE_URL_VAR = "SCREENCAST_STORE_URL"

DEFAULT_PROFILE = "default"


def _default_ice_servers() -> List[str]:
    return ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


@dataclass
class SessionConfig:
    """Tunables of one screencast session."""

    profile: str = DEFAULT_PROFILE
    store_url: Optional[str] = None
    poll_interval: float = 2.0
    code_length: int = MIN_LENGTH
    ice_servers: List[str] = field(default_factory=_default_ice_servers)
    request_timeout: float = 10.0
    cleanup_on_stop: bool = True
    capture_device: Optional[str] = None
    capture_format: Optional[str] = None
    capture_framerate: int = 15

    def __post_init__(self) -> None:
        self.poll_interval = float(self.poll_interval)
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.code_length = int(self.code_length)
        if not MIN_LENGTH <= self.code_length <= MAX_LENGTH:
            raise ValueError(f"code_length must be between {MIN_LENGTH} and {MAX_LENGTH}")
        self.request_timeout = float(self.request_timeout)
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self.capture_framerate = max(1, int(self.capture_framerate))
        self.cleanup_on_stop = bool(self.cleanup_on_stop)
        if isinstance(self.ice_servers, str):
            self.ice_servers = [self.ice_servers]
        self.ice_servers = [str(url) for url in (self.ice_servers or [])]
        if self.store_url is not None:
            self.store_url = str(self.store_url).strip() or None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], *, profile: str = DEFAULT_PROFILE) -> "SessionConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"unknown settings in profile {profile!r}: {', '.join(unknown)}")
        values = dict(payload)
        values["profile"] = profile
        return cls(**values)

    def to_dict(self) -> dict:
        return {item.name: getattr(self, item.name) for item in fields(self)}


def read_profiles(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    target = Path(path) if path is not None else PROFILES_PATH
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        if path is not None:
            raise
        profiles = {}
    if not isinstance(profiles, dict):
        raise ValueError(f"{target} must contain a mapping of profiles")
    return {str(name): dict(values or {}) for name, values in profiles.items()}


def load_config(
    profile: Optional[str] = None,
    *,
    path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
    **overrides: Any,
) -> SessionConfig:
    """
    Resolve a :class:`SessionConfig` from a profile file, the environment and
    explicit keyword overrides (``None`` overrides are ignored).
    """

    env = os.environ if environ is None else environ
    name = profile or env.get(ENV_PROFILE_VAR) or DEFAULT_PROFILE
    profiles = read_profiles(path)
    if name not in profiles and name != DEFAULT_PROFILE:
        raise ValueError(f"unknown profile {name!r}")
    config = SessionConfig.from_dict(profiles.get(name, {}), profile=name)

    env_store = env.get(ENV_STORE_URL_VAR)
    if env_store:
        config = replace(config, store_url=env_store)

    applied = {key: value for key, value in overrides.items() if value is not None}
    if applied:
        config = replace(config, **applied)
    return config


__all__ = ["SessionConfig", "load_config", "read_profiles"]
