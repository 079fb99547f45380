"""
The ordered, immutable container query results are returned in.
"""

from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, overload

if TYPE_CHECKING:
    from .models import Model


class Collection(Sequence):
    """
    An ordered sequence of :py:class:`~ldapquery.models.Model` instances.

    The order is the order the directory returned the entries in.  A
    :py:class:`Collection` never changes once built; methods that would
    change it return a new one instead.

    Args:
        models: the models to hold

    """

    def __init__(self, models: Iterable["Model"] = ()) -> None:
        self._models: tuple[Model, ...] = tuple(models)

    @overload
    def __getitem__(self, index: int) -> "Model": ...

    @overload
    def __getitem__(self, index: slice) -> "Collection": ...

    def __getitem__(self, index):
        if isinstance(index, slice):
            return Collection(self._models[index])
        return self._models[index]

    def __len__(self) -> int:
        return len(self._models)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Collection):
            return self._models == other._models
        if isinstance(other, (list, tuple)):
            return list(self._models) == list(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._models)

    def __repr__(self) -> str:
        return f"<Collection: {list(self._models)!r}>"

    def all(self) -> list["Model"]:
        return list(self._models)

    def count(self, value: Any = None) -> int:  # type: ignore[override]
        """
        With no argument, the number of models held.  With an argument, the
        number of times it occurs, as for any other sequence.
        """
        if value is None:
            return len(self._models)
        return super().count(value)

    def first(self) -> "Model | None":
        return self._models[0] if self._models else None

    def last(self) -> "Model | None":
        return self._models[-1] if self._models else None

    def is_empty(self) -> bool:
        return not self._models

    def is_not_empty(self) -> bool:
        return bool(self._models)

    def dns(self) -> list[str]:
        return [model.dn for model in self._models if model.dn]

    def contains(self, model: "Model | str") -> bool:
        """
        Test whether an entry is held, comparing DNs case-insensitively.

        Args:
            model: a model instance or a DN

        Returns:
            ``True`` if an entry with that DN is in this collection.

        """
        dn = model if isinstance(model, str) else model.dn
        if not dn:
            return False
        return dn.lower() in {d.lower() for d in self.dns()}

    def filter(self, func: Callable[["Model"], bool]) -> "Collection":
        return Collection(model for model in self._models if func(model))

    def merge(self, other: Iterable["Model"]) -> "Collection":
        """
        Append the models from ``other`` that are not already here.

        Entries are identified by DN, case-insensitively; the first occurrence
        wins and order is kept.

        Args:
            other: the models to add

        Returns:
            A new :py:class:`Collection`.

        """
        seen: set[str] = set()
        merged: list[Model] = []
        for model in (*self._models, *other):
            key = (model.dn or "").lower()
            if key and key in seen:
                continue
            seen.add(key)
            merged.append(model)
        return Collection(merged)
