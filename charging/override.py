"""
Override Gate

Consume-once manual override. The user arms it by setting the
``chargeOverride`` flag; the engine claims it with an atomic
compare-and-set so that two concurrent observers can never both fire
the same override.

The flag is false after a claimed cycle whether or not the resulting
dispatch succeeded. A failed dispatch therefore loses the override.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.core.store import DocumentStore

logger = logging.getLogger(__name__)

OVERRIDE_FIELD = "chargeOverride"


class OverrideState(Enum):
    ARMED = "armed"  # flag is false, waiting for a user action
    TRIGGERED = "triggered"  # flag is true, not yet consumed


class OverrideGate:
    def __init__(self, store: "DocumentStore"):
        self.store = store

    async def state(self, user_id: str) -> OverrideState:
        doc = await self.store.get_user(user_id) or {}
        return OverrideState.TRIGGERED if doc.get(OVERRIDE_FIELD) is True else OverrideState.ARMED

    async def arm(self, user_id: str) -> None:
        """User action: ARMED -> TRIGGERED."""
        await self.store.update_user_fields(user_id, {OVERRIDE_FIELD: True})
        logger.info("Charge override armed for user %s", user_id)

    async def claim(self, user_id: str) -> bool:
        """
        TRIGGERED -> ARMED, atomically.

        Returns True only for the caller that observed TRIGGERED and cleared it.
        """
        claimed = await self.store.compare_and_set(user_id, OVERRIDE_FIELD, True, False)
        if claimed:
            logger.info("Charge override claimed for user %s", user_id)
        return claimed
