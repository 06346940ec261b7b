"""User consent for actions that spawn processes or download binaries."""

from __future__ import annotations

import inspect
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Union

from tokligence.config import config_dir
from tokligence.schemas import ConsentAction, ConsentChoice, ConsentDecision, ConsentScope

logger = logging.getLogger(__name__)

CONSENT_FILE_NAME = "consent.json"

PROMPTS = {
    ConsentAction.START: (
        "Start the local Tokligence Gateway? This runs a local process on your "
        "machine for PII filtering and API translation."
    ),
    ConsentAction.DOWNLOAD: "Download Tokligence Gateway binary from GitHub Releases?",
}

Prompter = Callable[
    [ConsentAction, str],
    Union[ConsentChoice, str, None, Awaitable[Union[ConsentChoice, str, None]]],
]


class ConsentDenied(Exception):
    """Raised when the user declines an action."""

    def __init__(self, action: ConsentAction):
        super().__init__(f"Consent for '{action.value}' was not granted")
        self.action = action


class ConsentGate:
    """Asks once per action and remembers "always allow" answers on disk."""

    def __init__(self, prompt: Prompter, store_path: Path | str | None = None):
        """Initialize the gate.

        Args:
            prompt: Callable receiving (action, question) and returning a
                ConsentChoice (or its string value, or None). May be async.
            store_path: JSON file holding persisted decisions
        """
        self._prompt = prompt
        self.store_path = Path(store_path) if store_path else config_dir() / CONSENT_FILE_NAME

    def _load(self) -> dict[str, bool]:
        if not self.store_path.exists():
            return {}
        try:
            data = json.loads(self.store_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable consent store {self.store_path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: bool(v) for k, v in data.items()}

    def _save(self, data: dict[str, bool]) -> None:
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        self.store_path.write_text(json.dumps(data, indent=2) + "\n")

    def is_remembered(self, action: ConsentAction) -> bool:
        return self._load().get(action.value, False)

    def remembered(self) -> list[ConsentAction]:
        """Actions with a persisted "always allow" decision."""
        data = self._load()
        return [action for action in ConsentAction if data.get(action.value)]

    async def authorize(self, action: ConsentAction) -> ConsentDecision:
        """Return whether the action may proceed, prompting when needed."""
        if self.is_remembered(action):
            return ConsentDecision(action=action, granted=True, scope=ConsentScope.ALWAYS)

        answer = self._prompt(action, PROMPTS[action])
        if inspect.isawaitable(answer):
            answer = await answer

        try:
            choice = ConsentChoice(answer) if answer is not None else ConsentChoice.CANCEL
        except ValueError:
            logger.warning(f"Unrecognized consent answer {answer!r}, treating as cancel")
            choice = ConsentChoice.CANCEL

        if choice == ConsentChoice.ALWAYS_ALLOW:
            data = self._load()
            data[action.value] = True
            self._save(data)
            logger.info(f"Remembered consent for '{action.value}'")
            return ConsentDecision(action=action, granted=True, scope=ConsentScope.ALWAYS)

        if choice == ConsentChoice.ALLOW_ONCE:
            return ConsentDecision(action=action, granted=True, scope=ConsentScope.ONCE)

        logger.info(f"Consent for '{action.value}' declined")
        return ConsentDecision(action=action, granted=False)

    def revoke(self, action: ConsentAction | None = None) -> list[ConsentAction]:
        """Forget persisted decisions for one action, or all when None.

        Returns:
            The actions whose decision was removed
        """
        data = self._load()
        targets = [action] if action is not None else list(ConsentAction)
        removed = [a for a in targets if data.pop(a.value, None)]
        if removed:
            self._save(data)
            logger.info(f"Revoked consent for: {', '.join(a.value for a in removed)}")
        return removed


def deny_all(action: ConsentAction, question: str) -> ConsentChoice:
    """Prompter for non-interactive use: never grants new consent."""
    return ConsentChoice.CANCEL
