"""Knowledge lookup for sub-agents.

Documents live as plain text files under ``<data_dir>/knowledge/<collection>/``.
Search is keyword overlap; good enough to seed a plan with local notes.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import re
from typing import List, Optional, Protocol

from subclaw.core.tasks import KnowledgeScope

logger = logging.getLogger("subclaw.knowledge")

_WORD = re.compile(r"[a-z0-9_]{3,}")
_DOC_EXTENSIONS = (".md", ".txt", ".rst")


@dataclass
class KnowledgeDoc:
    source: str
    content: str
    score: int = 0


class KnowledgeSource(Protocol):
    def search(self, query: str, collection: Optional[str] = None, limit: int = 5) -> List[KnowledgeDoc]: ...


def _terms(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


class DirectoryKnowledgeBase:
    def __init__(self, root: str) -> None:
        self.root = root
        os.makedirs(root, exist_ok=True)

    def collections(self) -> List[str]:
        try:
            return sorted(
                name for name in os.listdir(self.root)
                if os.path.isdir(os.path.join(self.root, name))
            )
        except OSError:
            return []

    def _docs(self, collection: str) -> List[KnowledgeDoc]:
        folder = os.path.join(self.root, collection)
        docs: List[KnowledgeDoc] = []
        if not os.path.isdir(folder):
            return docs
        for name in sorted(os.listdir(folder)):
            if not name.endswith(_DOC_EXTENSIONS):
                continue
            try:
                with open(os.path.join(folder, name), "r", encoding="utf-8", errors="replace") as handle:
                    docs.append(KnowledgeDoc(source=f"{collection}/{name}", content=handle.read()))
            except OSError as exc:
                logger.warning("Unreadable knowledge doc %s/%s: %s", collection, name, exc)
        return docs

    def search(self, query: str, collection: Optional[str] = None, limit: int = 5) -> List[KnowledgeDoc]:
        names = [collection] if collection else self.collections()
        wanted = _terms(query)
        scored: List[KnowledgeDoc] = []
        for name in names:
            for doc in self._docs(name):
                doc.score = len(wanted & _terms(doc.content)) if wanted else 1
                if doc.score > 0:
                    scored.append(doc)
        scored.sort(key=lambda d: d.score, reverse=True)
        return scored[:limit]


def gather_knowledge(
    scope: Optional[KnowledgeScope],
    rag: Optional[KnowledgeSource] = None,
    collections: Optional[KnowledgeSource] = None,
) -> str:
    """Concatenate retrieved snippets; source failures are logged and skipped."""
    if scope is None:
        return ""
    parts: List[str] = []
    limit = scope.max_docs or 5
    if rag is not None and scope.query:
        try:
            docs = rag.search(scope.query, limit=limit)
            if docs:
                parts.append("\n\n".join(f"[{d.source or 'doc'}] {d.content}" for d in docs))
        except Exception as exc:  # noqa: BLE001
            logger.warning("RAG search failed: %s", exc)
    if collections is not None:
        for name in scope.collections:
            try:
                docs = collections.search(scope.query, collection=name, limit=limit)
                if docs:
                    parts.append("\n\n".join(f"[{name}] {d.content}" for d in docs))
            except Exception as exc:  # noqa: BLE001
                logger.warning("Knowledge search [%s] failed: %s", name, exc)
    return "\n\n---\n\n".join(parts)
