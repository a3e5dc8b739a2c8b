"""In-memory fakes for the relay tests.

The relay only talks to its collaborators through small protocols
(Connection, TokenSource, TurnStore), so in-memory stand-ins are enough
to drive every state of a session.
"""

import asyncio

from relay.errors import PersistenceError, RelayConnectionError
from relay.services.llm import SharedBackend


class FakeConnection:
    """Scripted client: hands out inbound messages, collects what is sent."""

    def __init__(self, inbound=None, fail_after=None, block_time=0.0):
        """
        Args:
            inbound: messages the client sends, in order; the client disconnects after the last one
            fail_after: raise RelayConnectionError once this many fragments were sent
            block_time: how long each send blocks (simulates a stalled client)
        """
        self.inbound = list(inbound or [])
        self.fail_after = fail_after
        self.block_time = block_time
        self.sent = []

    async def receive_text(self):
        if not self.inbound:
            return None
        return self.inbound.pop(0)

    async def send_text(self, text):
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise RelayConnectionError("client went away")
        if self.block_time > 0:
            await asyncio.sleep(self.block_time)
        self.sent.append(text)


class FakeSource:
    """Token source replaying one script per generation call.

    A script item that is an exception is raised at that point in the stream.
    """

    name = "fake"

    def __init__(self, scripts=None):
        self.scripts = list(scripts or [])
        self.calls = []
        self.yielded = 0
        self.closed_streams = 0
        self.closed = False

    async def stream(self, messages, grammar=None):
        self.calls.append((list(messages), grammar))
        script = self.scripts.pop(0) if self.scripts else []
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                self.yielded += 1
                yield item
        finally:
            self.closed_streams += 1

    async def close(self):
        self.closed = True


class MemoryStore:
    """Append-only in-memory turn store."""

    def __init__(self, fail=False):
        self.fail = fail
        self.turns = []

    async def append_turn(self, turn):
        if self.fail:
            raise PersistenceError("store unreachable")
        self.turns.append(turn)
        return len(self.turns)


def make_backend(*scripts, slots=1):
    """SharedBackend over a FakeSource playing `scripts`, one per generation."""
    source = FakeSource(scripts)
    return SharedBackend(source, slots=slots), source
