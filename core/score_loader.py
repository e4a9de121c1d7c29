"""
Fetch-and-parse of a score source.

This is the only suspension point of the core: the source is fetched once
(http(s) via httpx, local files via aiofiles), unpacked if it is a
compressed .mxl container, then parsed. Every failure comes back as a
ParseResult with ok=False; nothing is retried automatically.
"""
from __future__ import annotations

import asyncio
import io
import logging
import zipfile
import zlib
from pathlib import Path
from typing import Optional, Union
from xml.etree import ElementTree as ET

import aiofiles
import httpx

from core.score_models import ParseResult
from core.score_parser import DEFAULT_TEMPO_BPM, parse_score

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class ScoreLoadError(Exception):
    """Score source unreachable, too large or not a readable container."""


class ScoreTooLargeError(ScoreLoadError):
    """Source or unpacked member exceeds the configured size limit."""


def _is_url(source: str) -> bool:
    s = source.strip().lower()
    return s.startswith("http://") or s.startswith("https://")


def _read_member(zf: zipfile.ZipFile, name: str, max_bytes: int) -> bytes:
    # file_size comes from the archive header; the bounded read covers forged headers
    size = zf.getinfo(name).file_size
    if size > max_bytes:
        raise ScoreTooLargeError(f"Score too large: {name} unpacks to {size} bytes > {max_bytes}")
    with zf.open(name) as f:
        data = f.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ScoreTooLargeError(f"Score too large: {name} unpacks to more than {max_bytes} bytes")
    return data


def unpack_mxl(blob: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """
    Compressed MusicXML: META-INF/container.xml names the rootfile;
    otherwise the first .xml/.musicxml member outside META-INF is used.
    No member is decompressed past max_bytes.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(blob)) as zf:
            names = zf.namelist()
            rootfile: Optional[str] = None
            if "META-INF/container.xml" in names:
                try:
                    container = ET.fromstring(_read_member(zf, "META-INF/container.xml", max_bytes))
                    for el in container.iter():
                        if el.tag.split("}")[-1] == "rootfile" and el.get("full-path"):
                            rootfile = el.get("full-path")
                            break
                except ET.ParseError as e:
                    logger.debug("Unreadable container.xml: %s", e)

            if rootfile is None or rootfile not in names:
                candidates = [
                    n for n in names
                    if not n.startswith("META-INF/") and n.lower().endswith((".xml", ".musicxml"))
                ]
                if not candidates:
                    raise ScoreLoadError("Compressed score has no MusicXML member")
                rootfile = candidates[0]

            return _read_member(zf, rootfile, max_bytes)
    except (zipfile.BadZipFile, zlib.error) as e:
        raise ScoreLoadError(f"Invalid compressed score: {e}") from e


def decode_source_bytes(blob: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    if blob.startswith(ZIP_MAGIC):
        return unpack_mxl(blob, max_bytes)
    return blob


async def _fetch_url(
    url: str,
    *,
    timeout_s: float,
    max_bytes: int,
    http: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """
    Streamed GET: the body is pulled chunk by chunk and abandoned as soon
    as it passes max_bytes (no full download into memory).
    """
    owns = http is None
    client = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), follow_redirects=True)
    try:
        async with client.stream("GET", url) as r:
            if r.status_code != 200:
                raise ScoreLoadError(f"Failed to fetch score: HTTP {r.status_code} {r.reason_phrase}")

            declared = r.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_bytes:
                raise ScoreTooLargeError(f"Score too large: {declared} bytes > {max_bytes}")

            buf = bytearray()
            async for chunk in r.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise ScoreTooLargeError(f"Score too large: more than {max_bytes} bytes")
            return bytes(buf)
    except httpx.TransportError as e:
        raise ScoreLoadError(f"Failed to fetch score: {e}") from e
    finally:
        if owns:
            await client.aclose()


async def _read_file(path: Path, *, max_bytes: int) -> bytes:
    if not path.exists() or not path.is_file():
        raise ScoreLoadError(f"Score file not found: {path}")
    size = path.stat().st_size
    if size > max_bytes:
        raise ScoreTooLargeError(f"Score too large: {size} bytes > {max_bytes}")
    try:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except OSError as e:
        raise ScoreLoadError(f"Failed to read score: {e}") from e


async def fetch_score_bytes(
    source: Union[str, Path],
    *,
    timeout_s: float = 10.0,
    max_bytes: int = DEFAULT_MAX_BYTES,
    http: Optional[httpx.AsyncClient] = None,
) -> bytes:
    if isinstance(source, str) and _is_url(source):
        blob = await _fetch_url(source.strip(), timeout_s=timeout_s, max_bytes=max_bytes, http=http)
    else:
        blob = await _read_file(Path(source).expanduser(), max_bytes=max_bytes)
    return decode_source_bytes(blob, max_bytes)


async def load_score(
    source: Union[str, Path],
    *,
    fallback_tempo: float = DEFAULT_TEMPO_BPM,
    hand_from_staff: bool = False,
    timeout_s: float = 10.0,
    max_bytes: int = DEFAULT_MAX_BYTES,
    http: Optional[httpx.AsyncClient] = None,
) -> ParseResult:
    try:
        markup = await fetch_score_bytes(source, timeout_s=timeout_s, max_bytes=max_bytes, http=http)
    except ScoreLoadError as e:
        logger.warning("Score load failed for %s: %s", source, e)
        return ParseResult.failure(str(e))

    return parse_score(markup, fallback_tempo, hand_from_staff=hand_from_staff)


class ScoreLoad:
    """
    One in-flight load. cancel() may be called any number of times;
    awaiting a cancelled load gives ok=False, error="cancelled".
    """

    def __init__(self, source: Union[str, Path], **kwargs) -> None:
        self.source = source
        self._task: asyncio.Task = asyncio.get_running_loop().create_task(load_score(source, **kwargs))

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def result(self) -> ParseResult:
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._task.cancelled():
                return ParseResult.failure("cancelled")
            raise

    def __await__(self):
        return self.result().__await__()
