"""Frontend / AST-to-IR Lowering."""

from __future__ import annotations

from abc import ABC, abstractmethod

from .instrument import Instrumentation
from .ir import IRInstruction


class Frontend(ABC):
    @abstractmethod
    def lower(self, tree, source: bytes) -> list[IRInstruction]: ...


def get_frontend(
    language: str,
    instrumentation: Instrumentation = Instrumentation(),
    entry_id: str = "",
) -> Frontend:
    """Return the lowering frontend for *language*.

    Raises ``ValueError`` if *language* has no registered frontend.
    """
    from .frontends import get_deterministic_frontend

    return get_deterministic_frontend(language, instrumentation, entry_id)
