"""
In-process Spotify credential state.

Credential is an immutable snapshot — access token and expiry always travel
together, so a reader sees either the previous or the new record, never a
mixture.  CredentialState is the single owner of "the current credential";
only SpotifyAuth replaces it, everything else reads through it.
"""

import time
from dataclasses import dataclass

# Treat a token as already expired this long before its literal expiry
EXPIRY_BUFFER_MS = 5 * 60 * 1000


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Credential:
    access_token: str
    expires_at: int  # epoch milliseconds
    refresh_token: str | None = None

    def remaining_ms(self, now: int) -> int:
        return self.expires_at - now

    def is_valid(self, now: int) -> bool:
        return now < self.expires_at - EXPIRY_BUFFER_MS

    def needs_refresh(self, now: int) -> bool:
        """True inside the refresh window: not yet expired, but within the buffer."""
        return 0 < self.remaining_ms(now) < EXPIRY_BUFFER_MS


class CredentialState:
    """Holds the current Credential (or None) plus a generation counter.

    The generation increments on every replace/clear, which lets a
    long-running operation tell whether the credential it started from is
    still the current one.
    """

    def __init__(self):
        self._credential: Credential | None = None
        self._generation = 0

    @property
    def current(self) -> Credential | None:
        return self._credential

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def access_token(self) -> str | None:
        return self._credential.access_token if self._credential else None

    def replace(self, credential: Credential | None):
        self._credential = credential
        self._generation += 1

    def clear(self):
        self.replace(None)
