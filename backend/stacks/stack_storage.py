"""
Filesystem store for compose stack definitions.

Layout:
    <STACKS_DIR>/<project>/compose.yaml
    <STACKS_DIR>/<project>/.env          (optional)

A container belongs to a stack when its ``com.docker.compose.project`` label
names a directory here. Stacks started elsewhere (a shell, another tool) are
"unmanaged": we see their labels but not their definition.

All filesystem access is async so slow volumes (NFS) don't block the loop.
"""

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
import yaml

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "compose.yaml"
ENV_FILENAME = ".env"

# Compose project names: lowercase alphanumeric, hyphens, underscores
VALID_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]*$')


def validate_stack_name(name: str) -> None:
    """
    Raises:
        ValueError: If name is not a filesystem-safe project name
    """
    if not name or len(name) > 100:
        raise ValueError("Stack name must be 1-100 characters")
    if not VALID_NAME_PATTERN.match(name):
        raise ValueError(
            "Stack name must be lowercase alphanumeric, hyphens, underscores, "
            "and start with a letter or number"
        )


@dataclass
class StackDefinition:
    name: str
    path: Path
    compose_yaml: str
    env_content: Optional[str] = None

    @property
    def compose_file(self) -> Path:
        return self.path / COMPOSE_FILENAME

    @property
    def env_file(self) -> Optional[Path]:
        return self.path / ENV_FILENAME if self.env_content is not None else None

    def parsed(self) -> Dict[str, Any]:
        return yaml.safe_load(self.compose_yaml) or {}

    def service_names(self) -> List[str]:
        services = self.parsed().get('services') or {}
        return sorted(services.keys())


class StackStore:

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _stack_path(self, name: str) -> Path:
        """Directory for ``name``; refuses anything that escapes the root."""
        validate_stack_name(name)
        path = self.root / name
        if path.is_symlink():
            raise ValueError("Symlinks not allowed in stacks directory")
        resolved = path.resolve()
        root = self.root.resolve()
        if resolved.parent != root:
            raise ValueError("Path escapes stacks directory")
        return path

    async def get_definition(self, name: str) -> Optional[StackDefinition]:
        """
        Load a stack by project name.

        Returns None when the stack is unknown, including names that aren't
        valid stack names at all.
        """
        try:
            path = self._stack_path(name)
        except ValueError as e:
            logger.debug(f"Not a managed stack name {name!r}: {e}")
            return None

        compose_path = path / COMPOSE_FILENAME
        env_path = path / ENV_FILENAME

        def _check_exists():
            return compose_path.is_file(), env_path.is_file()

        compose_exists, env_exists = await asyncio.to_thread(_check_exists)
        if not compose_exists:
            return None

        async with aiofiles.open(compose_path, 'r') as f:
            compose_yaml = await f.read()

        env_content = None
        if env_exists:
            async with aiofiles.open(env_path, 'r') as f:
                env_content = await f.read()

        return StackDefinition(name=name, path=path, compose_yaml=compose_yaml, env_content=env_content)

    async def write_stack(self, name: str, compose_yaml: str, env_content: Optional[str] = None) -> StackDefinition:
        """Create or replace a stack definition. Validates the YAML first."""
        try:
            yaml.safe_load(compose_yaml)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid compose YAML: {e}")

        path = self._stack_path(name)
        await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        await self._atomic_write(path / COMPOSE_FILENAME, compose_yaml)

        env_path = path / ENV_FILENAME
        if env_content:
            await self._atomic_write(env_path, env_content)
        elif await asyncio.to_thread(env_path.exists):
            await asyncio.to_thread(env_path.unlink)

        return StackDefinition(name=name, path=path, compose_yaml=compose_yaml, env_content=env_content or None)

    async def list_stacks(self) -> List[str]:
        def _list():
            if not self.root.exists():
                return []
            return sorted(
                d.name for d in self.root.iterdir()
                if d.is_dir() and (d / COMPOSE_FILENAME).exists()
            )
        return await asyncio.to_thread(_list)

    async def _atomic_write(self, target: Path, content: str):
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        os.close(fd)
        try:
            async with aiofiles.open(tmp_path, 'w') as f:
                await f.write(content)
            await asyncio.to_thread(os.replace, tmp_path, target)
        except Exception:
            await asyncio.to_thread(_unlink_quietly, tmp_path)
            raise


def _unlink_quietly(path: str):
    try:
        os.unlink(path)
    except OSError:
        pass


_stack_store: Optional[StackStore] = None


def get_stack_store() -> StackStore:
    global _stack_store
    if _stack_store is None:
        from config.paths import STACKS_DIR
        _stack_store = StackStore(STACKS_DIR)
    return _stack_store
