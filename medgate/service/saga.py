from __future__ import annotations

from typing import Any, Callable, List, Tuple

from medgate.logging import get_logger

logger = get_logger(__name__)


class Saga:
    """Records undo steps for a multi-write operation.

    Each forward step that succeeds registers its compensation; on failure the
    compensations run newest first. A failing undo does not stop the rest and
    is logged at critical level with everything needed to clean up by hand.
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.name = name
        self.context = context
        self._steps: List[Tuple[str, Callable[..., Any], tuple]] = []

    def add_compensation(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        self._steps.append((label, fn, args))

    def compensate(self) -> List[str]:
        failed: List[str] = []
        while self._steps:
            label, fn, args = self._steps.pop()
            try:
                fn(*args)
            except Exception as exc:
                failed.append(label)
                logger.critical(
                    "compensation_failed",
                    saga=self.name,
                    step=label,
                    args=[str(a) for a in args],
                    error_type=type(exc).__name__,
                    error=str(exc),
                    manual_remediation_required=True,
                    **self.context,
                )
        if failed:
            logger.error("saga_rollback_incomplete", saga=self.name, failed_steps=failed)
        else:
            logger.info("saga_rolled_back", saga=self.name)
        return failed
