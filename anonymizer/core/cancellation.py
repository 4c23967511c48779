import threading


class CancellationToken:
    """Cooperative cancellation signal shared by a caller and one run.

    The pipeline checks it between chunks and between passes; it never
    interrupts a model call that is already in flight.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
