"""
Sweep cursors persisted in the shared store.

A cursor holds the next page to process for one ``(bracket, scope)``. Reading
clamps any hand-edited or partially written value back into range, and every
write is a compare-and-set against the value that was read.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from brawlsync.core.store import SharedStore
from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

REGIONAL_SCOPE = "regional"


@dataclass(frozen=True, slots=True)
class PageRange:
    start: int
    end: int

    def clamp(self, page: int) -> int:
        return min(max(page, self.start), self.end)

    def following(self, page: int) -> int:
        return self.start if page >= self.end else page + 1


def _to_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


class CursorStore:
    def __init__(self, store: SharedStore, prefix: str = "sweep:cursor", max_cas_attempts: int = 5) -> None:
        self.store = store
        self.prefix = prefix
        self.max_cas_attempts = max_cas_attempts

    def key(self, bracket: str, scope: str) -> str:
        return f"{self.prefix}:{bracket}:{scope}"

    @staticmethod
    def parse_page(raw: Optional[str], page_range: PageRange) -> int:
        page = _to_int(raw)
        if page is None:
            return page_range.start
        return page_range.clamp(page)

    @staticmethod
    def parse_regional(raw: Optional[str], region_count: int, max_page: int) -> Tuple[int, int]:
        """Decode ``"<region_index>:<page>"``; bad parts fall back to index 0 / page 1."""
        index, page = None, None
        if raw is not None and ":" in raw:
            index_raw, page_raw = raw.split(":", 1)
            index, page = _to_int(index_raw), _to_int(page_raw)
        if index is None or not 0 <= index < region_count:
            index = 0
        page = PageRange(1, max_page).clamp(page) if page is not None else 1
        return index, page

    async def _swap(self, key: str, read_and_advance) -> Tuple[object, bool]:
        current = None
        for _ in range(self.max_cas_attempts):
            raw = await self.store.get(key)
            current, successor = read_and_advance(raw)
            if await self.store.compare_and_set(key, raw, successor):
                return current, True
            log.debug(f"Cursor {key} changed concurrently; re-reading")
        log.warning(f"Cursor {key} not advanced after {self.max_cas_attempts} concurrent writes")
        return current, False

    async def advance(self, bracket: str, scope: str, page_range: PageRange) -> int:
        """Return the page to process now and persist the one after it (wrapping to the range start)."""
        key = self.key(bracket, scope)

        def step(raw):
            page = self.parse_page(raw, page_range)
            if raw is not None and raw != str(page):
                log.warning(f"Cursor {key} held {raw!r}; clamped to {page}")
            return page, str(page_range.following(page))

        page, _ = await self._swap(key, step)
        return page

    async def advance_regional(self, bracket: str, regions: Sequence[str], max_page: int) -> Tuple[str, int]:
        """
        Return ``(region, page)`` to process now.

        The page advances every call; after ``max_page`` it resets to 1 and the
        rotation moves on to the next region, wrapping after the last one.
        """
        key = self.key(bracket, REGIONAL_SCOPE)
        count = len(regions)

        def step(raw):
            index, page = self.parse_regional(raw, count, max_page)
            if page >= max_page:
                successor = f"{(index + 1) % count}:1"
            else:
                successor = f"{index}:{page + 1}"
            return (index, page), successor

        (index, page), _ = await self._swap(key, step)
        return regions[index], page

    async def peek(self, bracket: str, scope: str, page_range: PageRange) -> int:
        return self.parse_page(await self.store.get(self.key(bracket, scope)), page_range)

    async def snapshot(
        self,
        brackets: List[str],
        scopes: Dict[str, PageRange],
        regions: Sequence[str],
        regional_max_page: int,
    ) -> Dict[str, Dict[str, object]]:
        result: Dict[str, Dict[str, object]] = {}
        for bracket in brackets:
            entry: Dict[str, object] = {}
            for scope, page_range in scopes.items():
                entry[scope] = await self.peek(bracket, scope, page_range)
            if regions:
                raw = await self.store.get(self.key(bracket, REGIONAL_SCOPE))
                index, page = self.parse_regional(raw, len(regions), regional_max_page)
                entry[REGIONAL_SCOPE] = {"region": regions[index], "page": page}
            result[bracket] = entry
        return result
