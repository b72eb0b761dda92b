from __future__ import annotations

from typing import Callable, Protocol


class Reporter(Protocol):
    def message(self, text: str) -> None:
        ...

    def progress(self, done: int, total: int) -> None:
        ...


class NullReporter:
    def message(self, text: str) -> None:
        return None

    def progress(self, done: int, total: int) -> None:
        return None


class CallbackReporter:
    def __init__(
        self,
        on_message: Callable[[str], None] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> None:
        self.on_message = on_message
        self.on_progress = on_progress

    def message(self, text: str) -> None:
        if self.on_message is not None:
            self.on_message(text)

    def progress(self, done: int, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(done, total)
