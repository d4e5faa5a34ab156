"""
A small observer implementation used for every event stream in tether (kernel status, iopub
messages, any message, session property changes, ...).

Emission is synchronous: .emit() calls every connected slot in connection order before returning.
That matters for KernelConnection.any_message, which must observe messages in wire order before
any asynchronous handling starts.
"""
import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

Slot = Callable[..., Any]


class Signal:
    def __init__(self, name: str = ""):
        self.name = name
        self._slots: List[Slot] = []

    def __repr__(self):
        return f"<Signal {self.name!r} slots={len(self._slots)}>"

    def connect(self, slot: Slot) -> Callable[[], None]:
        """
        Connect a slot and return a function that disconnects it again. Connecting the same slot
        twice is a no-op.
        """
        if slot not in self._slots:
            self._slots.append(slot)

        def disconnect():
            self.disconnect(slot)

        return disconnect

    def disconnect(self, slot: Slot) -> None:
        if slot in self._slots:
            self._slots.remove(slot)

    def disconnect_all(self) -> None:
        self._slots.clear()

    def emit(self, *args) -> None:
        # Iterate a copy so slots can disconnect themselves (or others) while we're emitting
        for slot in list(self._slots):
            if slot not in self._slots:
                continue
            try:
                slot(*args)
            except Exception:
                logger.exception(
                    "Error in signal slot", extra={"signal": self.name, "slot": repr(slot)}
                )
