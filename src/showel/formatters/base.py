"""Formatter protocol and the name -> formatter registry used by exports."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator

    from showel.core.models import QueryResult


@runtime_checkable
class Formatter(Protocol):
    """Turns a QueryResult into output lines.

    Cells arrive already stringified, with SQL NULL as the literal "NULL".
    """

    def format(self, result: QueryResult) -> Iterator[str]: ...


class FormatterRegistry:
    """Formatter classes by export name.

    Callers pass the full set of output options to get(); each formatter
    receives only the keyword arguments its constructor declares, so the
    CLI does not need to know which option belongs to which format.
    """

    def __init__(self) -> None:
        self._classes: dict[str, type[Formatter]] = {}

    def register(self, name: str, formatter_class: type[Formatter]) -> None:
        self._classes[name] = formatter_class

    def get(self, name: str, **options: object) -> Formatter:
        try:
            cls = self._classes[name]
        except KeyError:
            msg = f"Unknown format {name!r}. Available: {', '.join(self.available)}"
            raise KeyError(msg) from None
        accepted = inspect.signature(cls).parameters
        return cls(**{k: v for k, v in options.items() if k in accepted})

    @property
    def available(self) -> list[str]:
        return sorted(self._classes)


registry = FormatterRegistry()
