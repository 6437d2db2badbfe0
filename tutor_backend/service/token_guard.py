from __future__ import annotations

import itertools


class TokenGuard:
    """Issues monotonically increasing tokens; only the newest one is current.

    Work started under an older token must not publish its result.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.current_token = 0

    def issue(self) -> int:
        self.current_token = next(self._counter)
        return self.current_token

    def is_current(self, token: int) -> bool:
        return token == self.current_token

    def invalidate(self) -> None:
        self.issue()
