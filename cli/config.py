"""
CLI Configuration

Precedence: defaults < ~/.registry/config.json < REGISTRY_* environment < command line flags.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Optional


ENV_PREFIX = "REGISTRY_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CLIConfig:
    """Configuration for the registry admin CLI"""

    server_url: str = "http://localhost:8000/api/v1"
    timeout: float = 30.0
    actor: Optional[str] = None  # sent as X-Actor, recorded in the audit log

    # Client-side cache presets (seconds)
    cache_ttl_academic: int = 600
    cache_ttl_short: int = 120
    cache_ttl_long: int = 1800
    cache_stale_fraction: float = 0.8
    cache_refresh_concurrency: int = 3

    upload_concurrency: int = 3
    bulk_chunk_size: int = 500

    page_size: int = 20
    verbose: bool = False

    config_dir: str = field(default_factory=lambda: str(Path.home() / ".registry"))

    def load_from_file(self, config_path: str) -> None:
        """Apply known keys from a JSON file; a missing file is ignored"""
        path = Path(config_path)
        if not path.exists():
            return
        with open(path) as f:
            data = json.load(f)
        known = {f.name for f in fields(self)}
        for key, value in data.items():
            if key in known:
                setattr(self, key, value)

    def load_from_env(self, environ: Optional[dict] = None) -> None:
        """REGISTRY_<FIELD> overrides, converted to the field's type"""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            value = environ.get(ENV_PREFIX + f.name.upper())
            if not value:
                continue
            setattr(self, f.name, self._converter(f.default)(value))

    @staticmethod
    def _converter(default: Any) -> Callable[[str], Any]:
        if isinstance(default, bool):
            return _parse_bool
        if isinstance(default, (int, float)):
            return type(default)
        return str

    @classmethod
    def load_default(cls) -> "CLIConfig":
        config = cls()
        config.load_from_file(str(Path(config.config_dir) / "config.json"))
        config.load_from_env()
        return config
