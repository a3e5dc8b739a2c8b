from __future__ import annotations

import enum
import re

from relay.errors import ActionDecodeError
from relay.models.action import VARIANTS, Do, Say, parse_action

_TAG = re.compile(r'"type"\s*:\s*"([^"\\]*)"')


class DecoderState(str, enum.Enum):
    AWAITING_TAG = "awaiting_tag"
    ACCUMULATING_PAYLOAD = "accumulating_payload"
    COMPLETE = "complete"
    REJECTED = "rejected"


class ActionDecoder:
    """incremental parser for one grammar-constrained turn.

    raw backend text is fed in as it streams. the variant tag is recognised
    as soon as it is readable so a wrong tag can stop generation early, but
    the action itself only exists after finish() at end-of-generation.
    """

    def __init__(self):
        self.state = DecoderState.AWAITING_TAG
        self.tag: str | None = None
        self.action: Do | Say | None = None
        self._raw: list[str] = []

    @property
    def raw(self) -> str:
        return "".join(self._raw)

    @property
    def rejected(self) -> bool:
        return self.state is DecoderState.REJECTED

    def feed(self, fragment: str) -> DecoderState:
        if self.state in (DecoderState.COMPLETE, DecoderState.REJECTED):
            return self.state

        self._raw.append(fragment)
        if self.state is DecoderState.AWAITING_TAG:
            match = _TAG.search(self.raw)
            if match:
                self.tag = match.group(1)
                if self.tag in VARIANTS:
                    self.state = DecoderState.ACCUMULATING_PAYLOAD
                else:
                    self.state = DecoderState.REJECTED
        return self.state

    def finish(self) -> Do | Say:
        if self.state is DecoderState.COMPLETE and self.action is not None:
            return self.action
        if self.state is DecoderState.REJECTED:
            raise ActionDecodeError(self.raw, f"unknown variant tag {self.tag!r}")

        try:
            action = parse_action(self.raw)
        except ActionDecodeError:
            self.state = DecoderState.REJECTED
            raise
        self.action = action
        self.tag = action.type
        self.state = DecoderState.COMPLETE
        return action
