"""Per-exchange cancellation tokens.

A token is a one-way flag. Components that suspend (relay writes, event merges,
poll iterations) check it at their checkpoints and stop mutating state once it
is tripped. Nothing is forcibly interrupted; in-flight reads simply have their
results discarded.
"""

from typing import Optional

from sonar_relay.config.log import get_logger
from sonar_relay.exceptions import Cancelled

logger = get_logger(__name__)


class CancellationToken:
    def __init__(self, label: str = ''):
        self.label = label
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if not self._cancelled:
            logger.debug('Cancellation token tripped', token=self.label)
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        """Checkpoint: raise Cancelled when the token has been tripped."""
        if self._cancelled:
            raise Cancelled()

    def __repr__(self) -> str:
        return f'CancellationToken(label={self.label!r}, cancelled={self._cancelled})'


class CancellationController:
    """Holds the single live token of a session.

    Starting a new operation must go through ``renew()`` so the previous token
    is invalidated before the new one is handed out.
    """

    def __init__(self):
        self._current: Optional[CancellationToken] = None
        self._generation = 0

    @property
    def current(self) -> Optional[CancellationToken]:
        return self._current

    def renew(self) -> CancellationToken:
        if self._current is not None:
            self._current.cancel()
        self._generation += 1
        self._current = CancellationToken(label=f'exchange-{self._generation}')
        return self._current

    def cancel(self) -> None:
        """Trip the live token, if any. The slot keeps the dead token until the next renew()."""
        if self._current is not None:
            self._current.cancel()
