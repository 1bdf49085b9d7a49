from __future__ import annotations

"""Terminal rendering of the key dialogs."""

import asyncio
import getpass
import sys
from typing import Callable, TextIO

from .prompts import Cancel, DialogView, FlowState, NotMyAccount, RequestCode, Submit, UserAction


CANCEL_WORDS = {"later", "cancel", "q"}
ESCAPE_WORDS = {"not-me", "not my account"}
SEND_WORDS = {"send", "resend"}
SECRET_STATES = {
    FlowState.AWAITING_REGISTER,
    FlowState.AWAITING_CONFIRM,
    FlowState.AWAITING_MISMATCH_KEY,
    FlowState.AWAITING_NEW_KEY,
}
LEVEL_PREFIX = {"info": "[i]", "success": "[ok]", "warning": "[!]", "error": "[x]"}


def parse_action(raw: str, state: FlowState) -> UserAction:
    text = raw.strip()
    lowered = text.lower()
    if lowered in CANCEL_WORDS:
        return Cancel()
    if lowered in ESCAPE_WORDS:
        return NotMyAccount()
    if state is FlowState.AWAITING_CODE and lowered in SEND_WORDS:
        return RequestCode()
    return Submit(text)


class ConsolePromptUI:
    """PromptUI over stdin/stdout; keys are read without echo."""

    def __init__(
        self,
        *,
        read_line: Callable[[str], str] = input,
        read_secret: Callable[[str], str] = getpass.getpass,
        out: TextIO | None = None,
    ) -> None:
        self.read_line = read_line
        self.read_secret = read_secret
        self.out = out or sys.stdout
        self._countdown = 0

    def _print(self, text: str) -> None:
        print(text, file=self.out)

    def _render(self, view: DialogView) -> None:
        self._print("")
        self._print(f"== {view.title} ==")
        user = f"{view.user_name} ({view.account_id})" if view.user_name else view.account_id
        self._print(f"Account: {user}")
        if view.message:
            self._print(view.message)
        if view.hint:
            self._print(view.hint)
        if view.error:
            self._print(f"Error: {view.error}")
        if view.countdown:
            self._print(f"Resend available in {view.countdown}s.")

    def _prompt_text(self, view: DialogView) -> str:
        if view.state is FlowState.AWAITING_CODE:
            send = "'send' for a code, " if view.can_request_code else ""
            return f"Code ({send}'later' to skip, 'not-me' to switch account): "
        return "Secret key ('later' to skip, 'not-me' to switch account): "

    async def next_action(self, view: DialogView) -> UserAction:
        self._render(view)
        self._countdown = view.countdown
        reader = self.read_secret if view.state in SECRET_STATES else self.read_line
        try:
            raw = await asyncio.to_thread(reader, self._prompt_text(view))
        except EOFError:
            return Cancel()
        return parse_action(raw, view.state)

    def update(self, view: DialogView) -> None:
        if self._countdown and view.countdown == 0 and view.state is FlowState.AWAITING_CODE:
            self._print("You can request a new code now.")
        self._countdown = view.countdown

    def close(self) -> None:
        self._countdown = 0

    def notify(self, message: str, level: str = "info") -> None:
        self._print(f"{LEVEL_PREFIX.get(level, '[i]')} {message}")
