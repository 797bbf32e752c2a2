"""Streaming CSV decoding for survey exports.

Uploads arrive as byte streams of unknown encoding. The decoder sniffs a bounded prefix to
choose between UTF-8 and the legacy Japanese double-byte code page, replays the prefix in
front of the remaining bytes, and splits the decoded text into logical CSV records
(RFC 4180 quoting, newlines allowed inside quoted fields) without buffering the file.

Classes:
    RecordSplitter: Incremental quote-aware splitter that turns text chunks into records.

Functions:
    iter_bytes(data, chunk_size): Async byte source over an in-memory payload.
    iter_upload(upload, chunk_size): Async byte source over a FastAPI UploadFile.
    guess_encoding(prefix, tokens): Pick the encoding whose decoding shows header tokens.
    sniff_encoding(source, ...): Detect the encoding and rebuild the full byte stream.
    iter_records(source, encoding): Decode a byte stream into logical CSV records.
    split_fields(record): Split one record on unquoted commas.
"""

from __future__ import annotations

import asyncio
import codecs
import re
from typing import AsyncIterator, Sequence

from fastapi import UploadFile

DEFAULT_ENCODING = "utf-8"
LEGACY_ENCODING = "cp932"
CANDIDATE_ENCODINGS: tuple[str, ...] = (DEFAULT_ENCODING, LEGACY_ENCODING)

_RECORD_SPECIAL = re.compile(r'["\n]')
_FIELD_SPECIAL = re.compile(r'[",]')
_BOM = "\ufeff"


async def iter_bytes(data: bytes, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    for start in range(0, len(data), max(1, chunk_size)):
        yield data[start : start + chunk_size]


async def iter_upload(upload: UploadFile, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            break
        yield chunk


def _decode_prefix(prefix: bytes, encoding: str) -> str:
    # incremental decode keeps a character cut at the prefix boundary out of the result
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    return decoder.decode(prefix, final=False)


def guess_encoding(prefix: bytes, tokens: Sequence[str]) -> str:
    decoded = {encoding: _decode_prefix(prefix, encoding) for encoding in CANDIDATE_ENCODINGS}

    for encoding, text in decoded.items():
        if "\ufffd" not in text and any(token in text for token in tokens):
            return encoding
    for encoding, text in decoded.items():
        if any(token in text for token in tokens):
            return encoding
    return DEFAULT_ENCODING


async def sniff_encoding(
    source: AsyncIterator[bytes],
    *,
    tokens: Sequence[str],
    max_bytes: int = 64 * 1024,
    min_bytes: int = 8 * 1024,
) -> tuple[str, AsyncIterator[bytes]]:
    """Read a bounded prefix, choose an encoding, and return it with the rebuilt stream.

    Reading stops once ``min_bytes`` have been seen and never continues past
    ``max_bytes``. The returned iterator yields the prefix chunks followed by the rest of
    ``source``, so no bytes are lost to detection.
    """

    prefix_chunks: list[bytes] = []
    seen = 0
    iterator = source.__aiter__()
    while seen < max_bytes:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            break
        if chunk:
            prefix_chunks.append(chunk)
            seen += len(chunk)
        if seen >= min_bytes:
            break

    encoding = guess_encoding(b"".join(prefix_chunks), tokens)
    return encoding, _replay(prefix_chunks, iterator)


async def _replay(prefix_chunks: list[bytes], rest: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    for chunk in prefix_chunks:
        yield chunk
    async for chunk in rest:
        yield chunk


class RecordSplitter:
    """Split decoded text into CSV records while tracking quote state across chunks.

    Records keep their quoting so :func:`split_fields` can apply the same rules per
    field. A ``"`` inside quotes followed by another ``"`` is an escaped quote; a line
    feed outside quotes ends a record and a trailing carriage return is dropped. A quote
    that ends a chunk while inside quotes is held back until the next chunk shows
    whether it is escaped.
    """

    def __init__(self) -> None:
        self._buffer: list[str] = []
        self._in_quotes = False
        self._held_quote = False

    @property
    def in_quotes(self) -> bool:
        return self._in_quotes

    def feed(self, text: str) -> list[str]:
        if self._held_quote:
            self._held_quote = False
            text = '"' + text
        records: list[str] = []
        length = len(text)
        pos = 0
        while pos < length:
            match = _RECORD_SPECIAL.search(text, pos)
            if match is None:
                self._buffer.append(text[pos:])
                break
            index = match.start()
            if index > pos:
                self._buffer.append(text[pos:index])

            if text[index] == "\n":
                if self._in_quotes:
                    self._buffer.append("\n")
                else:
                    records.append(self._take_record())
                pos = index + 1
                continue

            if self._in_quotes:
                if index + 1 == length:
                    self._held_quote = True
                    break
                if text[index + 1] == '"':
                    self._buffer.append('""')
                    pos = index + 2
                    continue
            self._in_quotes = not self._in_quotes
            self._buffer.append('"')
            pos = index + 1
        return records

    def flush(self) -> list[str]:
        """Return the trailing partial record, if any, even inside an open quote."""

        if self._held_quote:
            self._held_quote = False
            self._in_quotes = not self._in_quotes
            self._buffer.append('"')
        record = self._take_record()
        self._in_quotes = False
        return [record] if record else []

    def _take_record(self) -> str:
        record = "".join(self._buffer)
        self._buffer.clear()
        if record.endswith("\r"):
            record = record[:-1]
        return record


async def iter_records(
    source: AsyncIterator[bytes],
    encoding: str = DEFAULT_ENCODING,
) -> AsyncIterator[str]:
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    splitter = RecordSplitter()
    at_start = True

    async for chunk in source:
        text = decoder.decode(chunk)
        if at_start and text:
            at_start = False
            if text.startswith(_BOM):
                text = text[1:]
        for record in splitter.feed(text):
            yield record
        await asyncio.sleep(0)

    tail = decoder.decode(b"", final=True)
    for record in splitter.feed(tail) + splitter.flush():
        yield record


def split_fields(record: str) -> list[str]:
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    length = len(record)
    pos = 0
    while pos < length:
        match = _FIELD_SPECIAL.search(record, pos)
        if match is None:
            current.append(record[pos:])
            break
        index = match.start()
        if index > pos:
            current.append(record[pos:index])

        if record[index] == ",":
            if in_quotes:
                current.append(",")
            else:
                fields.append("".join(current).strip())
                current = []
            pos = index + 1
            continue

        if in_quotes and index + 1 < length and record[index + 1] == '"':
            current.append('"')
            pos = index + 2
            continue
        in_quotes = not in_quotes
        pos = index + 1

    fields.append("".join(current).strip())
    return fields
