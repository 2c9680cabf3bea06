"""
📌 Per-account signature cursor
Turns repeated getSignaturesForAddress listings (newest-first) into a
stream of strictly-new signatures, oldest-first.
"""

from typing import Iterable, Iterator, Optional, Sequence, Set


class SignatureCursor:
    """Bookmark of the newest signature seen for one watched account.

    An uninitialized cursor treats its first non-empty listing as history:
    it only records the head and yields nothing, so startup does not replay
    the account's whole past. `prime()` does the same explicitly and also
    accepts an empty listing (account with no history yet).
    """

    def __init__(self, last_seen: Optional[str] = None,
                 processed: Optional[Iterable[str]] = None):
        self.last_seen = last_seen
        self.processed: Set[str] = set(processed or ())
        self._primed = last_seen is not None

    @property
    def initialized(self) -> bool:
        return self._primed

    def prime(self, newest_first: Sequence[str]) -> None:
        self.last_seen = newest_first[0] if newest_first else None
        self._primed = True

    def mark(self, signature: str) -> None:
        self.processed.add(signature)

    def observe(self, newest_first: Sequence[str]) -> Iterator[str]:
        """Yield unprocessed signatures newer than the cursor, oldest first.

        A signature counts as processed once the consumer asks for the next
        one. The cursor only moves to the head of `newest_first` when the
        consumer drains the iterator; abandoning it midway (an exception in
        the consumer) leaves the position untouched so the next listing
        retries what was not finished.
        """
        if not newest_first:
            return
        head = newest_first[0]
        if not self._primed:
            self.prime(newest_first)
            return

        fresh, seen = [], set()
        for sig in newest_first:
            if sig == self.last_seen:
                break
            if sig in self.processed or sig in seen:
                continue
            seen.add(sig)
            fresh.append(sig)
        fresh.reverse()

        for sig in fresh:
            yield sig
            self.processed.add(sig)
        self.last_seen = head
