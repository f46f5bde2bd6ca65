"""Folder containment arena: folders indexed by id, parent links walked
explicitly so cycle checks run before anything is written."""

from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Set

from models.entities import Folder


class FolderTree:
    def __init__(self, folders: Iterable[Folder]):
        self._parents: Dict[str, Optional[str]] = {}
        self._children: Dict[str, List[str]] = {}
        for folder in folders:
            self._parents[folder.id] = folder.parent_id
            if folder.parent_id:
                self._children.setdefault(folder.parent_id, []).append(folder.id)

    def __contains__(self, folder_id: str) -> bool:
        return folder_id in self._parents

    def ancestors(self, folder_id: str) -> List[str]:
        """Parent chain from the direct parent up to the root. Stops if a
        corrupt chain loops back on itself."""
        chain: List[str] = []
        seen: Set[str] = {folder_id}
        current = self._parents.get(folder_id)
        while current and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self._parents.get(current)
        return chain

    def would_create_cycle(self, folder_id: str, new_parent_id: Optional[str]) -> bool:
        if not new_parent_id:
            return False
        if new_parent_id == folder_id:
            return True
        return folder_id in self.ancestors(new_parent_id)

    def descendants(self, folder_id: str) -> List[str]:
        result: List[str] = []
        stack = list(self._children.get(folder_id, []))
        seen: Set[str] = {folder_id}
        while stack:
            child = stack.pop()
            if child in seen:
                continue
            seen.add(child)
            result.append(child)
            stack.extend(self._children.get(child, []))
        return result
