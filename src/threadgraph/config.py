"""ThreadgraphConfig: project-local config for the memory store.

Default layout (all relative to the project root):

    threadgraph.toml      # project config
    .env                  # optional: MEMORY_DIR_PATH, HOST, PORT
    .threadgraph/
        memory/           # thread-<agentThreadId>.jsonl files
            .lock

threadgraph.toml example:

    [memory]
    dir = ".threadgraph/memory"

    [server]
    host = "127.0.0.1"
    port = 3000

Precedence, lowest first: built-in defaults, threadgraph.toml, .env, process
environment.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "threadgraph.toml"
_DEFAULT_MEMORY_DIR = ".threadgraph/memory"
_DEFAULT_HOST = "127.0.0.1"
_DEFAULT_PORT = 3000

ENV_MEMORY_DIR = "MEMORY_DIR_PATH"
ENV_HOST = "HOST"
ENV_PORT = "PORT"


@dataclass
class ServerConfig:
    host: str = _DEFAULT_HOST
    port: int = _DEFAULT_PORT


@dataclass
class ThreadgraphConfig:
    """Resolved configuration for a memory store."""

    root: Path                      # directory that contains threadgraph.toml
    memory_dir: Path = field(default_factory=Path)
    server: ServerConfig = field(default_factory=ServerConfig)

    def ensure_dirs(self) -> None:
        """Create memory_dir (and parents) if it doesn't exist."""
        self.memory_dir.mkdir(parents=True, exist_ok=True)


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file (no external dependency)."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def _parse_port(value: Any, source: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        msg = f"{source}: port must be an integer, got {value!r}"
        raise ValueError(msg) from exc
    if not 0 < port < 65536:
        msg = f"{source}: port out of range: {port}"
        raise ValueError(msg)
    return port


def load_config(root: Path | str | None = None) -> ThreadgraphConfig:
    """Load threadgraph.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    mem_section = raw.get("memory", {})
    srv_section = raw.get("server", {})

    # .env overrides threadgraph.toml; the process environment overrides both
    env = {**_load_env(root_path), **os.environ}

    memory_rel = env.get(ENV_MEMORY_DIR) or str(mem_section.get("dir", _DEFAULT_MEMORY_DIR))
    host = env.get(ENV_HOST) or str(srv_section.get("host", _DEFAULT_HOST))
    if env.get(ENV_PORT):
        port = _parse_port(env[ENV_PORT], ENV_PORT)
    else:
        port = _parse_port(srv_section.get("port", _DEFAULT_PORT), str(config_path))

    return ThreadgraphConfig(
        root=root_path,
        memory_dir=(root_path / Path(memory_rel).expanduser()),
        server=ServerConfig(host=host, port=port),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for threadgraph.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path) -> Path:
    """Write a default threadgraph.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"{_CONFIG_FILENAME} already exists at {config_path}"
        raise FileExistsError(msg)

    content = f"""\
[memory]
# dir = "{_DEFAULT_MEMORY_DIR}"   # default; or set {ENV_MEMORY_DIR} in .env

# [server]
# host = "{_DEFAULT_HOST}"   # or set {ENV_HOST}
# port = {_DEFAULT_PORT}          # or set {ENV_PORT}
"""
    config_path.write_text(content)
    return config_path
