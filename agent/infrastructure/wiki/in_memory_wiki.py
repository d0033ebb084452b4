import re
from typing import Any, Dict, List, Optional, Tuple

import structlog

from domain.tool.builtin.wiki_search import WikiWorkspace

logger = structlog.get_logger(__name__)

_FILTER_STEP = re.compile(r"\[(tag|title|search)\[([^\]]*)\]\]")
_WORD = re.compile(r"\w+")


def _words(text: str) -> set:
    return {word.lower() for word in _WORD.findall(text or "")}


class InMemoryWikiBackend:
    """Wiki backend over notes held in memory

    Supports the ``[tag[x]]``, ``[title[x]]`` and ``[search[x]]`` filter
    steps; several steps narrow the result. Similarity is word overlap.
    """

    def __init__(self, workspaces: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        self._notes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._workspaces: Dict[str, WikiWorkspace] = {}
        self._embedded: Dict[str, set] = {}
        self.invoked_actions: List[Tuple[str, str, Dict[str, Any]]] = []
        for name, notes in (workspaces or {}).items():
            self.add_workspace(name, name, notes)

    def add_workspace(self, workspace_id: str, name: str, notes: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._workspaces[workspace_id] = WikiWorkspace(id=workspace_id, name=name)
        self._notes[workspace_id] = {
            title: {"title": title, **fields} for title, fields in (notes or {}).items()
        }

    async def list_workspaces(self) -> List[WikiWorkspace]:
        return list(self._workspaces.values())

    async def run_filter(self, workspace_id: str, filter: str) -> List[str]:
        notes = self._notes.get(workspace_id, {})
        steps = _FILTER_STEP.findall(filter)
        if not steps:
            logger.debug("Unsupported filter expression", filter=filter)
            return []

        titles = list(notes)
        for operator, operand in steps:
            if operator == "tag":
                titles = [title for title in titles if operand in notes[title].get("tags", [])]
            elif operator == "title":
                titles = [title for title in titles if title == operand]
            else:
                needle = operand.lower()
                titles = [
                    title for title in titles
                    if needle in title.lower() or needle in (notes[title].get("text") or "").lower()
                ]
        return titles

    async def get_tiddler(self, workspace_id: str, title: str) -> Optional[Dict[str, Any]]:
        note = self._notes.get(workspace_id, {}).get(title)
        return dict(note) if note else None

    async def search_similar(self, workspace_id: str, query: str, ai_config: Dict[str, Any],
                             limit: int, threshold: float) -> List[Tuple[str, float]]:
        query_words = _words(query)
        if not query_words:
            return []
        scored = []
        for title in self._embedded.get(workspace_id, set()):
            note = self._notes[workspace_id].get(title)
            if note is None:
                continue
            note_words = _words(f"{title} {note.get('text', '')}")
            similarity = len(query_words & note_words) / len(query_words | note_words)
            if similarity >= threshold:
                scored.append((title, similarity))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    async def generate_embeddings(self, workspace_id: str, ai_config: Dict[str, Any],
                                  force_update: bool) -> Dict[str, Any]:
        notes = self._notes.get(workspace_id, {})
        embedded = set() if force_update else self._embedded.get(workspace_id, set())
        self._embedded[workspace_id] = embedded | set(notes)
        return {"total_embeddings": len(self._embedded[workspace_id]), "total_notes": len(notes)}

    async def add_tiddler(self, workspace_id: str, title: str, text: str, fields: Dict[str, Any]) -> None:
        notes = self._workspace_notes(workspace_id)
        notes[title] = {**fields, "title": title, "text": text}
        self._embedded.get(workspace_id, set()).discard(title)

    async def set_tiddler_text(self, workspace_id: str, title: str, text: str) -> None:
        notes = self._workspace_notes(workspace_id)
        note = notes.setdefault(title, {"title": title})
        note["text"] = text
        self._embedded.get(workspace_id, set()).discard(title)

    async def delete_tiddler(self, workspace_id: str, title: str) -> bool:
        notes = self._workspace_notes(workspace_id)
        if notes.pop(title, None) is None:
            return False
        self._embedded.get(workspace_id, set()).discard(title)
        return True

    async def invoke_action(self, workspace_id: str, title: str, variables: Dict[str, Any]) -> bool:
        """Record the run of an action note; the note itself is not interpreted"""
        if title not in self._workspace_notes(workspace_id):
            return False
        self.invoked_actions.append((workspace_id, title, dict(variables)))
        return True

    def _workspace_notes(self, workspace_id: str) -> Dict[str, Dict[str, Any]]:
        if workspace_id not in self._notes:
            raise ValueError(f'Workspace "{workspace_id}" has no note store')
        return self._notes[workspace_id]
