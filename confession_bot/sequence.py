import logging

from .storage import DocumentStore

logger = logging.getLogger(__name__)

COUNTERS = "counters"
CONFESSION_NUMBER = "confessionNumber"


class SequenceGenerator:
    """Named counters that hand out consecutive integers starting at 1."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def next(self, counter_name: str = CONFESSION_NUMBER) -> int:
        def _increment(current):
            value = current["value"] + 1 if current else 1
            return {"value": value}

        doc = await self.store.transaction(COUNTERS, counter_name, _increment)
        logger.debug(f"Counter '{counter_name}' advanced to {doc['value']}")
        return doc["value"]

    async def current(self, counter_name: str = CONFESSION_NUMBER) -> int:
        doc = await self.store.get(COUNTERS, counter_name)
        return doc["value"] if doc else 0
