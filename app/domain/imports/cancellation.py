"""
Cooperative cancellation for validation runs.
"""
import threading


class CancellationToken:
    """
    One token per validation run. Workers poll ``cancelled`` between units of
    work and use ``wait`` instead of ``time.sleep`` so pacing delays end as
    soon as the run is cancelled.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if the token was cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)
