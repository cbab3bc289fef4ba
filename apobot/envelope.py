from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


def flatten_messages(message: Any) -> list[str]:
    """The remote app sends messages as a str, a list, or {field: [messages]}."""
    if message is None:
        return []
    if isinstance(message, str):
        return [message] if message else []
    if isinstance(message, dict):
        result: list[str] = []
        for value in message.values():
            result.extend(flatten_messages(value))
        return result
    if isinstance(message, (list, tuple)):
        result = []
        for value in message:
            result.extend(flatten_messages(value))
        return result
    return [str(message)]


@dataclass(frozen=True)
class Envelope:
    """``{result, data, message, confirmation?}`` as returned by the scheduling app."""

    result: bool
    data: Any = None
    messages: tuple[str, ...] = ()
    confirmation: tuple[str, ...] = ()
    # Set whenever the field came back with a value (null or "" mean none), even one with no readable message.
    needs_confirmation: bool = False

    @property
    def ok(self) -> bool:
        # A confirmation is a soft validation warning (e.g. outside business hours).
        return self.result and not self.needs_confirmation

    def error_text(self, default: str) -> str:
        if self.needs_confirmation:
            return " ".join(self.confirmation) or default
        return " ".join(self.messages) or default

    @classmethod
    def from_json(cls, raw: Any) -> Envelope:
        if not isinstance(raw, dict):
            return cls(result=False)

        confirmation_raw = raw.get("confirmation")
        confirmation: list[str] = []
        if isinstance(confirmation_raw, str) and confirmation_raw:
            try:
                confirmation = flatten_messages(json.loads(confirmation_raw))
            except json.JSONDecodeError:
                confirmation = [confirmation_raw]
        else:
            confirmation = flatten_messages(confirmation_raw)

        return cls(
            result=bool(raw.get("result")),
            data=raw.get("data"),
            messages=tuple(flatten_messages(raw.get("message"))),
            confirmation=tuple(confirmation),
            needs_confirmation=confirmation_raw not in (None, "", False),
        )
