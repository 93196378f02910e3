"""Shared repository request and result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class DocumentWrite:
    """A single row write queued for ``Store.batch_write``.

    ``mode`` is ``"update"`` (patch an existing row found by ``key``) or
    ``"create"`` (insert a new row built from ``fields``).
    """

    model: type
    fields: dict[str, Any]
    key: Any = None
    mode: str = "update"

    def describe(self) -> str:
        if self.key is None:
            return f"{self.model.__name__}(new)"
        return f"{self.model.__name__}({self.key})"


@dataclass(slots=True)
class BatchWriteResult:
    written: int = 0
    skipped: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "written": self.written,
            "skipped": self.skipped,
            "failures": self.failures,
        }


__all__ = ["BatchWriteResult", "DocumentWrite"]
