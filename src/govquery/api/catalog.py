#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from yaml import safe_load

from govquery import log
from govquery.analytics.catalog import CatalogEntry, CatalogSearchHit

# scores per matched field, highest first
EXACT_NAME_SCORE = 1000
NAME_SCORE = 400
TAG_SCORE = 200
INTENT_SCORE = 150
DOMAIN_ENTITY_SCORE = 100


class InMemoryCatalogRepository:
    """Catalog repository over a fixed set of entries."""

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self._entries = {e.procedure_name.lower(): e for e in entries}

    @classmethod
    def from_dicts(
        cls, entries: Iterable[Mapping[str, Any]]
    ) -> "InMemoryCatalogRepository":
        return cls(CatalogEntry.from_dict(e) for e in entries)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "InMemoryCatalogRepository":
        with Path(path).open() as f:
            doc = safe_load(f) or {}
        entries = doc.get("procedures", []) if isinstance(doc, dict) else doc
        repo = cls.from_dicts(entries)
        log.logger("catalog").info(
            "catalog_loaded", path=str(path), entries=len(repo._entries)
        )
        return repo

    async def get(self, procedure_name: str) -> Optional[CatalogEntry]:
        return self._entries.get(procedure_name.lower())

    def _score(self, entry: CatalogEntry, terms: list[str], query: str) -> float:
        name = entry.procedure_name.lower()
        if query == name or query == name.split(".", 1)[-1]:
            return EXACT_NAME_SCORE
        score = 0
        tags = [t.lower() for t in entry.tags]
        for term in terms:
            if term in name:
                score += NAME_SCORE
            if any(term in t for t in tags):
                score += TAG_SCORE
            if entry.intent and term in entry.intent.lower():
                score += INTENT_SCORE
            if (entry.domain and term in entry.domain.lower()) or (
                entry.entity and term in entry.entity.lower()
            ):
                score += DOMAIN_ENTITY_SCORE
        return score

    async def search(self, query: str, top_k: int) -> list[CatalogSearchHit]:
        query = (query or "").strip().lower()
        terms = [t for t in query.replace(",", " ").split() if t]
        hits = []
        for entry in self._entries.values():
            if not (
                entry.is_enabled and entry.is_read_only and entry.is_atomic_compatible
            ):
                continue
            score = self._score(entry, terms, query) if query else 1
            if score > 0:
                hits.append(CatalogSearchHit(entry=entry, score=score))
        hits.sort(key=lambda h: (-h.score, h.entry.procedure_name.lower()))
        return hits[:top_k]
