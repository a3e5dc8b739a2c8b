import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from relay.errors import PersistenceError
from relay.models.turn import Role, Turn

logger = logging.getLogger(__name__)


class TurnStore(Protocol):
    async def append_turn(self, turn: Turn) -> int: ...


class TurnRecorder:
    """persists one record per turn, best-effort.

    a failed write is logged and reported as None; it never raises into the
    relay, so the live conversation is not held up by the store.
    """

    def __init__(self, store: TurnStore, timeout: float = 5.0):
        self.store = store
        self.timeout = timeout
        self._last: datetime | None = None

    def stamp(self, role: Role, content: str) -> Turn:
        """build the immutable turn now; timestamps are strictly increasing per recorder"""
        now = datetime.now(timezone.utc)
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(microseconds=1)
        self._last = now
        return Turn(role=role, content=content, timestamp=now)

    async def record(self, role: Role, content: str) -> Turn | None:
        return await self.write(self.stamp(role, content))

    def record_nowait(self, turn: Turn) -> asyncio.Task:
        """write an already stamped turn in the background"""
        return asyncio.create_task(self.write(turn))

    async def write(self, turn: Turn) -> Turn | None:
        try:
            record_id = await asyncio.wait_for(self.store.append_turn(turn), timeout=self.timeout)
        except PersistenceError as e:
            logger.warning("failed to record %s turn: %s", turn.role.value, e)
            return None
        except asyncio.TimeoutError:
            logger.warning("recording %s turn timed out after %.1fs", turn.role.value, self.timeout)
            return None
        except Exception:
            logger.exception("unexpected error recording %s turn", turn.role.value)
            return None

        if record_id is None:
            logger.warning("store returned no id for %s turn", turn.role.value)
            return None
        logger.debug("inserted %s turn with id %s", turn.role.value, record_id)
        return turn.model_copy(update={"id": record_id})
