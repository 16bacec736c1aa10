"""SourceProvider abstraction shared by every calendar source."""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from calsync.errors import CalendarError, SourceUnavailable
from calsync.models import EventSource, RawEvent, TimeRange

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Records a provider could read plus per-record problems it skipped."""

    records: list[RawEvent] = field(default_factory=list)
    errors: list[CalendarError] = field(default_factory=list)


class SourceProvider(abc.ABC):
    """One origin of calendar data, with its own failure domain.

    ``fetch`` raises a :class:`~calsync.errors.CalendarError` when the whole
    source failed.  A malformed individual record never fails the batch; it is
    reported in :attr:`FetchResult.errors` instead.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable label used in logs and failure records (e.g. ``cloud:a@example.com``)."""
        ...

    @property
    @abc.abstractmethod
    def source(self) -> EventSource:
        ...

    @abc.abstractmethod
    async def fetch(self, window: TimeRange) -> FetchResult:
        """Return the raw records intersecting *window*."""
        ...

    async def aclose(self) -> None:
        """Release provider-owned resources."""
        return None


@dataclass(frozen=True)
class ProcessOutput:
    returncode: int
    stdout: str
    stderr: str


async def run_process(
    cmd: Sequence[str],
    *,
    stdin: str,
    timeout: float,
    source: str,
) -> ProcessOutput:
    """Run an external helper, feeding *stdin* and collecting its output.

    Raises
    ------
    SourceUnavailable
        The executable is missing or cannot start, or it outlived *timeout*
        (the process is killed).
    """
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(stdin.encode("utf-8")),
            timeout=timeout,
        )
    except TimeoutError:
        logger.error("%s helper timed out after %.0fs", source, timeout)
        if proc is not None and proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise SourceUnavailable(
            f"Helper timed out after {timeout:g} seconds", source=source
        ) from None
    except FileNotFoundError as exc:
        raise SourceUnavailable(f"Helper not found: {cmd[0]}", source=source) from exc
    except OSError as exc:
        raise SourceUnavailable(
            f"Helper failed to start: {cmd[0]} ({type(exc).__name__})", source=source
        ) from exc

    stderr = stderr_bytes.decode("utf-8", errors="replace")
    if stderr:
        logger.debug("%s helper stderr: %s", source, stderr[:500])
    return ProcessOutput(
        returncode=proc.returncode or 0,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr,
    )
