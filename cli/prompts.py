"""Yes/no confirmation prompts with prompt_toolkit."""

from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style

STYLE = Style.from_dict(
    {
        "prompt": "#F45935 bold",
    }
)

YES_ANSWERS = ("y", "yes")
NO_ANSWERS = ("n", "no")


def interpret_answer(answer: str) -> Optional[bool]:
    """Return True/False for a recognized answer, None to ask again."""
    answer = answer.strip().lower()
    if answer in YES_ANSWERS:
        return True
    if answer in NO_ANSWERS:
        return False
    return None


class ConsolePrompter:
    """Asks on the terminal until the user answers yes or no."""

    def __init__(self, session: Optional[PromptSession] = None):
        self._session = session

    async def confirm(self, prompt: str) -> bool:
        if self._session is None:
            self._session = PromptSession(style=STYLE)
        while True:
            answer = await self._session.prompt_async([("class:prompt", prompt)])
            decision = interpret_answer(answer)
            if decision is not None:
                return decision
