from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

FRONTMATTER_PATTERN = re.compile(r"^---\n(.*?)\n---\n(.*)$", re.DOTALL)
DEFAULT_TOOLS = "read,grep,find,ls"
DEFAULT_MODEL = "openrouter/google/gemini-3-flash-preview"


class DefinitionNotFoundError(LookupError):
    """Raised when a worker type name does not match any definition."""

    def __init__(self, name: str, available: list[str]) -> None:
        super().__init__(f'Agent "{name}" not found. Available: {", ".join(available)}')
        self.name = name
        self.available = available


@dataclass(frozen=True, slots=True)
class WorkerTypeDefinition:
    name: str
    description: str
    tools: str
    model: str
    system_prompt: str
    source_path: Path | None = None

    @property
    def short_model(self) -> str:
        return self.model.rsplit("/", maxsplit=1)[-1] or self.model


def parse_definition_file(
    path: Path,
    *,
    default_tools: str = DEFAULT_TOOLS,
    default_model: str = DEFAULT_MODEL,
) -> WorkerTypeDefinition | None:
    """Parse a markdown worker definition with a ``key: value`` frontmatter block.

    Returns ``None`` for unreadable files, files without frontmatter, or
    frontmatter without a ``name`` key.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        logger.debug("Skipping unreadable definition file %s", path, exc_info=True)
        return None

    match = FRONTMATTER_PATTERN.match(raw)
    if not match:
        return None

    frontmatter: dict[str, str] = {}
    for line in match.group(1).split("\n"):
        key, sep, value = line.partition(":")
        if sep and key.strip():
            frontmatter[key.strip()] = value.strip()

    name = frontmatter.get("name")
    if not name:
        return None

    return WorkerTypeDefinition(
        name=name,
        description=frontmatter.get("description") or "",
        tools=frontmatter.get("tools") or default_tools,
        model=frontmatter.get("model") or default_model,
        system_prompt=match.group(2).strip(),
        source_path=path,
    )


class DefinitionStore:
    """Directory of ``*.md`` definitions, cached for a short time-to-live."""

    def __init__(
        self,
        directory: Path,
        *,
        ttl_seconds: float = 5.0,
        default_tools: str = DEFAULT_TOOLS,
        default_model: str = DEFAULT_MODEL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        self.default_tools = default_tools
        self.default_model = default_model
        self._clock = clock
        self._cache: dict[str, WorkerTypeDefinition] | None = None
        self._cache_time = 0.0

    def load_all(self) -> dict[str, WorkerTypeDefinition]:
        now = self._clock()
        if self._cache is not None and now - self._cache_time < self.ttl_seconds:
            return self._cache

        definitions: dict[str, WorkerTypeDefinition] = {}
        if not self.directory.is_dir():
            return definitions

        for path in sorted(self.directory.glob("*.md")):
            definition = parse_definition_file(
                path,
                default_tools=self.default_tools,
                default_model=self.default_model,
            )
            if definition is not None:
                definitions[definition.name.lower()] = definition

        logger.debug("Loaded %d worker definitions from %s", len(definitions), self.directory)
        self._cache = definitions
        self._cache_time = now
        return definitions

    def get(self, name: str) -> WorkerTypeDefinition | None:
        return self.load_all().get(name.lower())

    def require(self, name: str) -> WorkerTypeDefinition:
        definition = self.get(name)
        if definition is None:
            raise DefinitionNotFoundError(name, self.available())
        return definition

    def available(self) -> list[str]:
        return list(self.load_all().keys())

    def invalidate(self) -> None:
        self._cache = None
        self._cache_time = 0.0
