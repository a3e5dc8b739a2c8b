from relay.models.turn import Turn


class Transcript:
    """rolling window of one session's turns, replayed to the backend as chat history"""

    def __init__(self, system_prompt: str, max_turns: int = 10):
        self.system_prompt = system_prompt
        self.max_turns = max_turns
        self.turns: list[Turn] = []

    def add(self, turn: Turn):
        self.turns.append(turn)
        self._enforce_window()

    def messages(self, user_text: str | None = None) -> list[dict[str, str]]:
        """system prompt, then the window, then the pending user text if it is not already in it"""
        out = []
        if self.system_prompt:
            out.append({"role": "system", "content": self.system_prompt})
        out.extend({"role": t.role.value, "content": t.content} for t in self.turns)
        if user_text is not None:
            out.append({"role": "user", "content": user_text})
        return out

    def _enforce_window(self):
        while len(self.turns) > self.max_turns:
            self.turns.pop(0)
