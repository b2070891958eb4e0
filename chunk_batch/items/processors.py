"""Item processor implementations."""

from __future__ import annotations

from typing import Any, Callable, Iterable


class PassThroughItemProcessor:
    """Default processor: every item survives unchanged."""

    def process(self, item: Any) -> Any:
        return item


class FunctionItemProcessor:
    """Adapts a plain callable (``None`` result = skip)."""

    def __init__(self, function: Callable[[Any], Any | None]):
        self._function = function

    def process(self, item: Any) -> Any | None:
        return self._function(item)


class FilteringItemProcessor:
    """Keeps items for which ``predicate`` is true, skips the rest."""

    def __init__(self, predicate: Callable[[Any], bool]):
        self._predicate = predicate

    def process(self, item: Any) -> Any | None:
        return item if self._predicate(item) else None


class CompositeItemProcessor:
    """Chains processors; stops at the first one that skips."""

    def __init__(self, processors: Iterable[Any]):
        self._processors = tuple(processors)

    def process(self, item: Any) -> Any | None:
        for processor in self._processors:
            item = processor.process(item)
            if item is None:
                return None
        return item
