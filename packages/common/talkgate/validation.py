"""Entity validation against the live library state."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

import structlog
from rapidfuzz import fuzz, process, utils

from .intent import IntentResolver
from .models import Intent, ValidationOutcome

logger = structlog.get_logger(__name__)


class EntityCatalog(Protocol):
    """Lookup-by-name over the entities actions can refer to."""

    async def exists(self, kind: str, name: str) -> bool:
        ...

    async def candidates(self, kind: str, name: str, limit: int = 10) -> List[str]:
        ...


class InMemoryCatalog:
    """Entity catalog held in memory, keyed by entity kind.

    Exact lookups are case-insensitive. ``candidates`` returns fuzzy matches
    scoring at least ``cutoff`` (0-1), best first.
    """

    def __init__(self, entities: Optional[Mapping[str, Iterable[str]]] = None, cutoff: float = 0.6):
        self.cutoff = cutoff
        self._entities: Dict[str, List[str]] = {}
        for kind, names in (entities or {}).items():
            for name in names:
                self.add(kind, name)

    @classmethod
    def from_file(cls, path: Path, cutoff: float = 0.6) -> InMemoryCatalog:
        """Load ``{"artist": [...], "album": [...]}`` from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected an object mapping entity kinds to names")
        catalog = cls(data, cutoff=cutoff)
        logger.info("Entity catalog loaded", path=str(path), kinds=sorted(data))
        return catalog

    def add(self, kind: str, name: str) -> None:
        names = self._entities.setdefault(kind, [])
        if name not in names:
            names.append(name)

    def kinds(self) -> List[str]:
        return sorted(self._entities)

    async def exists(self, kind: str, name: str) -> bool:
        target = name.casefold()
        return any(n.casefold() == target for n in self._entities.get(kind, ()))

    async def candidates(self, kind: str, name: str, limit: int = 10) -> List[str]:
        choices = self._entities.get(kind)
        if not choices:
            return []
        matches = process.extract(
            name,
            choices,
            scorer=fuzz.WRatio,
            processor=utils.default_process,
            limit=limit,
            score_cutoff=self.cutoff * 100,
        )
        return [choice for choice, _score, _idx in matches]


class EntityValidator:
    """Checks every entity-typed parameter of an intent before execution."""

    def __init__(self, catalog: EntityCatalog, resolver: IntentResolver, max_candidates: int = 10):
        self.catalog = catalog
        self.resolver = resolver
        self.max_candidates = max_candidates

    async def validate(self, intent: Intent) -> ValidationOutcome:
        spec = self.resolver.spec(intent.name)
        if spec is None:
            return ValidationOutcome.valid()

        for parameter, kind in spec.entities.items():
            value = intent.parameters.get(parameter)
            if value is None:
                continue
            if await self.catalog.exists(kind, value):
                continue

            candidates = await self.catalog.candidates(kind, value, limit=self.max_candidates)
            if candidates:
                logger.info(
                    "Entity ambiguous",
                    intent=intent.name,
                    parameter=parameter,
                    value=value,
                    candidates=len(candidates),
                )
                return ValidationOutcome.ambiguous(parameter, value, candidates)

            logger.warning(
                "Entity not found",
                intent=intent.name,
                parameter=parameter,
                kind=kind,
                value=value,
            )
            return ValidationOutcome.not_found(parameter, value)

        return ValidationOutcome.valid()
