from __future__ import annotations

from collections import defaultdict
from typing import Dict, Generic, Iterable, List, Optional, Protocol, Tuple, TypeVar

from .models import ObjectMeta

OwnerKey = Tuple[str, str, str]


class _HasMetadata(Protocol):
    metadata: ObjectMeta


Child = TypeVar("Child", bound=_HasMetadata)


class OwnerIndex(Generic[Child]):
    """Secondary index from a controlling owner to the children it owns.

    Only owner references flagged as controller and matching the indexed
    ``api_version``/``kind`` are taken into account.
    """

    def __init__(self, api_version: str, kind: str) -> None:
        self._api_version = api_version
        self._kind = kind
        self._children: Dict[OwnerKey, List[Child]] = defaultdict(list)

    @classmethod
    def build(cls, api_version: str, kind: str, children: Iterable[Child]) -> "OwnerIndex[Child]":
        index: OwnerIndex[Child] = cls(api_version, kind)
        for child in children:
            index.add(child)
        return index

    def add(self, child: Child) -> None:
        key = self.owner_key(child.metadata)
        if key is not None:
            self._children[key].append(child)

    def owner_key(self, metadata: ObjectMeta) -> Optional[OwnerKey]:
        owner = metadata.controller_of()
        if owner is None:
            return None
        if owner.api_version != self._api_version or owner.kind != self._kind:
            return None
        return (metadata.namespace or "", self._kind, owner.name)

    def children_of(self, namespace: str, owner_name: str) -> List[Child]:
        return list(self._children.get((namespace, self._kind, owner_name), []))

    def __len__(self) -> int:
        return sum(len(children) for children in self._children.values())
