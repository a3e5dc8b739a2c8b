import asyncio
import enum
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Protocol

from relay.config import Settings
from relay.errors import ActionDecodeError, GenerationError, RelayConnectionError
from relay.models.action import ACTION_GRAMMAR, Do, Say, dump_action
from relay.models.turn import Role
from relay.services.decoder import ActionDecoder
from relay.services.llm import SharedBackend
from relay.services.normalizer import normalize
from relay.services.recorder import TurnRecorder
from relay.services.transcript import Transcript

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def receive_text(self) -> str | None:
        """next inbound text message, or None once the client has gone"""
        ...

    async def send_text(self, text: str) -> None:
        """deliver one fragment; raises RelayConnectionError if the client is gone"""
        ...


class SessionState(str, enum.Enum):
    OPEN = "open"
    RECEIVING = "receiving"
    GENERATING = "generating"
    RECORDING = "recording"
    CLOSED = "closed"


@dataclass
class StreamBuffer:
    accumulated: str = ""

    def append(self, piece: str):
        self.accumulated += piece

    def clear(self):
        self.accumulated = ""


class RelaySession:
    """drives one connection: receive a message, stream the reply, record both turns.

    generation and transport failures are kept apart: a backend failure costs
    one turn (fallback reply), a transport failure ends the session.
    """

    def __init__(
        self,
        connection: Connection,
        backend: SharedBackend,
        recorder: TurnRecorder,
        *,
        system_prompt: str = "",
        fallback_message: str = "Oops, something went wrong.",
        structured: bool = False,
        stream_raw: bool = False,
        max_fragments: int = 1000,
        history_turns: int = 10,
        send_timeout: float = 5.0,
    ):
        self.connection = connection
        self.backend = backend
        self.recorder = recorder
        self.fallback_message = fallback_message
        self.structured = structured
        self.stream_raw = stream_raw
        self.max_fragments = max_fragments
        self.send_timeout = send_timeout

        self.state = SessionState.OPEN
        self.buffer = StreamBuffer()
        self.transcript = Transcript(system_prompt, max_turns=history_turns)
        self.last_action: Do | Say | None = None
        self._pending_user: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls, connection: Connection, backend: SharedBackend, recorder: TurnRecorder, settings: Settings,
    ) -> "RelaySession":
        return cls(
            connection,
            backend,
            recorder,
            system_prompt=settings.system_prompt,
            fallback_message=settings.fallback_message,
            structured=settings.structured_output,
            stream_raw=settings.structured_stream_raw,
            max_fragments=settings.max_fragments,
            history_turns=settings.history_turns,
            send_timeout=settings.send_timeout,
        )

    async def run(self):
        logger.info("connection opened (structured=%s)", self.structured)
        try:
            while self.state is not SessionState.CLOSED:
                self.state = SessionState.RECEIVING
                text = await self.connection.receive_text()
                if text is None:
                    break
                if not text.strip():
                    continue
                logger.info("received from client: %r", text[:200])
                await self.handle_message(text)
        except RelayConnectionError as e:
            logger.info("connection lost: %s", e)
        finally:
            self.state = SessionState.CLOSED
            self.buffer.clear()
            await self._flush_pending_user()
            logger.info("connection closed")

    async def handle_message(self, text: str):
        messages = self.transcript.messages(text)
        user_turn = self.recorder.stamp(Role.USER, text)
        self._pending_user = self.recorder.record_nowait(user_turn)
        self.transcript.add(user_turn)

        self.state = SessionState.GENERATING
        try:
            if self.structured:
                reply = await self._generate_structured(messages)
            else:
                reply = await self._generate_text(messages)
        except RelayConnectionError:
            if self.buffer.accumulated:
                await self._record_reply(self.buffer.accumulated)
            raise

        self.state = SessionState.RECORDING
        await self._record_reply(reply)

    async def send(self, text: str):
        if self.state is SessionState.CLOSED:
            raise RelayConnectionError("session is closed")
        try:
            await asyncio.wait_for(self.connection.send_text(text), timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            self.state = SessionState.CLOSED
            raise RelayConnectionError(f"send timed out after {self.send_timeout}s") from e
        except RelayConnectionError:
            self.state = SessionState.CLOSED
            raise

    async def _generate_text(self, messages: list[dict[str, str]]) -> str:
        count = 0
        try:
            async with self.backend.checkout() as source:
                async with aclosing(source.stream(messages)) as stream:
                    async for fragment in stream:
                        piece = normalize(fragment, self.buffer.accumulated)
                        if piece:
                            await self.send(piece)
                            self.buffer.append(piece)
                        count += 1
                        if count >= self.max_fragments:
                            logger.warning("reply cut at %d fragments", count)
                            break
        except GenerationError as e:
            if not self.buffer.accumulated:
                logger.warning("generation failed before any output: %s", e)
                return await self._fallback()
            logger.warning(
                "generation failed mid-stream after %d chars: %s", len(self.buffer.accumulated), e,
            )
            return self.buffer.accumulated

        if not self.buffer.accumulated:
            logger.warning("backend returned no text")
            return await self._fallback()
        return self.buffer.accumulated

    async def _generate_structured(self, messages: list[dict[str, str]]) -> str:
        decoder = ActionDecoder()
        count = 0
        try:
            async with self.backend.checkout() as source:
                async with aclosing(source.stream(messages, ACTION_GRAMMAR)) as stream:
                    async for fragment in stream:
                        decoder.feed(fragment)
                        if self.stream_raw:
                            await self.send(fragment)
                            self.buffer.append(fragment)
                        if decoder.rejected:
                            logger.warning("backend produced unknown variant %r, stopping", decoder.tag)
                            break
                        count += 1
                        if count >= self.max_fragments:
                            logger.warning("structured reply cut at %d fragments", count)
                            break
            action = decoder.finish()
            data = normalize(action.data, "")
            if not data:
                raise ActionDecodeError(decoder.raw, f"empty {action.type} payload")
        except GenerationError as e:
            logger.warning("structured generation failed: %s", e)
            return await self._fallback()

        action = action.model_copy(update={"data": data})
        self.last_action = action
        content = dump_action(action)
        if not self.stream_raw:
            await self.send(content)
            self.buffer.append(content)
        return content

    async def _fallback(self) -> str:
        await self.send(self.fallback_message)
        return self.fallback_message

    async def _record_reply(self, content: str):
        turn = self.recorder.stamp(Role.ASSISTANT, content)
        self.transcript.add(turn)
        self.buffer.clear()
        # keep store order equal to conversation order
        await self._flush_pending_user()
        await self.recorder.write(turn)

    async def _flush_pending_user(self):
        if self._pending_user is not None:
            task, self._pending_user = self._pending_user, None
            await task
