"""Published feed view for UI consumption."""

from typing import Callable, Iterator, Optional, Sequence

from .models import FeedItem

ViewListener = Callable[[tuple[FeedItem, ...]], None]


class FeedItemStore:
    """Holds the last merged view.

    Readers get an immutable tuple and a change notification. There is
    exactly one writer: whoever calls ``bind_writer()`` first, which in
    practice is the ReconcileEngine.
    """

    def __init__(self):
        self._items: tuple[FeedItem, ...] = ()
        self._index: dict[str, FeedItem] = {}
        self._listeners: list[ViewListener] = []
        self._writer_bound = False

    @property
    def items(self) -> tuple[FeedItem, ...]:
        return self._items

    def get(self, item_id: str) -> Optional[FeedItem]:
        return self._index.get(item_id)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[FeedItem]:
        return iter(self._items)

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        """Call ``listener`` with the new view whenever it changes.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def bind_writer(self) -> Callable[[Sequence[FeedItem]], bool]:
        """Hand out the only writer of this store.

        Raises:
            RuntimeError: If a writer was already bound
        """
        if self._writer_bound:
            raise RuntimeError("FeedItemStore already has a writer")
        self._writer_bound = True
        return self._publish

    def _publish(self, items: Sequence[FeedItem]) -> bool:
        view = tuple(items)
        if view == self._items:
            return False
        self._items = view
        self._index = {item.id: item for item in view}
        for listener in list(self._listeners):
            listener(view)
        return True
