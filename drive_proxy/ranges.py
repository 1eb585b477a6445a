from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import RangeNotSatisfiableError

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte offsets into a resource of ``size`` bytes."""

    start: int
    end: int
    size: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.size}"


def parse_range(range_header: str | None, size: int) -> ByteRange | None:
    """Parse a ``Range`` header against a resource of ``size`` bytes.

    Returns ``None`` when the header is absent or cannot be interpreted as a
    single ``bytes`` range, in which case the full resource is served. Only
    the first range of a multi-range request is honoured.

    Raises:
        RangeNotSatisfiableError: The range is well formed but starts at or
            beyond the end of the resource, or ends before it starts.
    """
    if not range_header:
        return None

    try:
        unit, ranges = range_header.split("=", 1)
        if unit.strip().lower() != "bytes":
            return None

        r = ranges.split(",")[0].strip()
        if "-" not in r:
            return None

        start_str, end_str = (part.strip() for part in r.split("-", 1))

        if start_str:
            start = int(start_str)
            end = int(end_str) if end_str else size - 1
        elif end_str:
            length = int(end_str)
            if length == 0:
                raise RangeNotSatisfiableError(size)
            start = max(size - length, 0)
            end = size - 1
        else:
            return None
    except ValueError:
        return None

    if start < 0 or end < 0:
        return None
    if start >= size or start > end:
        raise RangeNotSatisfiableError(size)
    return ByteRange(start=start, end=min(end, size - 1), size=size)


class ByteRangeReader:
    """Async iterable yielding only the bytes of ``byte_range`` from ``chunks``.

    ``chunks`` is the full resource starting at offset zero, in arbitrary
    chunk sizes. Iteration stops as soon as the end of the range is reached,
    so the caller may close the underlying stream without reading the rest.
    """

    def __init__(self, chunks: AsyncIterable[bytes], byte_range: ByteRange) -> None:
        self._chunks = chunks
        self._range = byte_range

    async def __aiter__(self) -> AsyncIterator[bytes]:
        start, end = self._range.start, self._range.end
        position = 0
        async for chunk in self._chunks:
            chunk_start = position
            position += len(chunk)
            if position <= start:
                continue
            lower = max(start - chunk_start, 0)
            upper = min(end - chunk_start + 1, len(chunk))
            if lower < upper:
                yield chunk[lower:upper]
            if position > end:
                break
