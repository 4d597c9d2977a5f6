"""
Run configuration.

Sources, lowest to highest precedence:
  1. defaults below
  2. the key=value config file (monitor.conf style: input=..., db=..., full=yes)
  3. POSTURE_* environment variables (a .env file is loaded first)
  4. explicit overrides from the command line
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Optional, Dict, Any

from dotenv import dotenv_values, load_dotenv

from .logger import get_child_logger

log = get_child_logger("settings")

_TRUE = {"1", "yes", "true", "on", "y"}
_FALSE = {"0", "no", "false", "off", "n", ""}


class SettingsError(Exception):
    pass


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise SettingsError(f"not a boolean: {value!r}")


@dataclass(frozen=True)
class Settings:
    input: str = "domains.csv"
    db: str = "posture.lmdb"
    full: bool = False
    probe: str = "./getUTF8"
    probe_timeout: float = 10.0
    resolv: str = "/etc/resolv.conf"
    nameservers: str = ""
    dns_timeout: float = 5.0
    http_timeout: float = 5.0
    interval: float = 20.0
    rate: int = 1
    concurrency: int = 1
    cache_timeouts: bool = True
    mx_preference: bool = False

    @classmethod
    def _coerce(cls, raw: Dict[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in raw or raw[f.name] is None:
                continue
            value = raw[f.name]
            try:
                if f.type in ("bool", bool):
                    out[f.name] = parse_bool(value)
                elif f.type in ("int", int):
                    out[f.name] = int(value)
                elif f.type in ("float", float):
                    out[f.name] = float(value)
                else:
                    out[f.name] = str(value).strip()
            except ValueError as e:
                raise SettingsError(f"invalid value for {f.name}: {value!r}") from e
        return out

    @classmethod
    def load(cls, config_path: Optional[str] = None, **overrides: Any) -> "Settings":
        load_dotenv()
        raw: Dict[str, Any] = {}
        if config_path:
            if os.path.exists(config_path):
                raw.update({k.strip().lower(): v for k, v in dotenv_values(config_path).items()})
                log.info("Loaded configuration file {}", config_path)
            else:
                log.warning("Configuration file {} not found, using defaults", config_path)

        for f in fields(cls):
            env_value = os.getenv(f"POSTURE_{f.name.upper()}")
            if env_value is not None:
                raw[f.name] = env_value

        settings = cls(**cls._coerce(raw))
        explicit = {k: v for k, v in overrides.items() if v is not None}
        if explicit:
            settings = replace(settings, **cls._coerce(explicit))
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.concurrency < 1:
            raise SettingsError("concurrency must be >= 1")
        if self.rate < 1:
            raise SettingsError("rate must be >= 1")
        if self.interval < 0:
            raise SettingsError("interval must be >= 0")
        if self.probe_timeout <= 0:
            raise SettingsError("probe_timeout must be > 0")

    def nameserver_list(self):
        return [s.strip() for s in self.nameservers.split(",") if s.strip()]
