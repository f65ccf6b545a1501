"""Executes a maintenance work-list one statement at a time."""
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("dbwatch.maintenance.runner")


@dataclass
class WorkResult:
    item: object
    statement: str
    applied: bool = False
    error: Optional[str] = None

    @property
    def ok(self):
        return self.error is None


def run_worklist(items, apply=None):
    """Render every item and, when ``apply`` is given, execute it.

    ``apply`` is called with the rendered statement. A failing item is
    recorded in its result and the batch carries on with the next one.
    """
    results = []
    for item in list(items):
        statement = item.render()
        if apply is None:
            results.append(WorkResult(item=item, statement=statement))
            continue
        try:
            apply(statement)
            logger.info(f"Applied: {statement}")
            results.append(WorkResult(item=item, statement=statement, applied=True))
        except Exception as e:
            logger.error(f"Failed: {statement}: {e}")
            results.append(WorkResult(item=item, statement=statement, error=str(e)))
    return results
