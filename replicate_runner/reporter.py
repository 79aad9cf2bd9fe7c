from __future__ import annotations

import json
import sys
from typing import IO, Any

from loguru import logger
from pydantic import BaseModel

from .types import CompletedEvent, ErrorEvent, PredictionSummary, ProgressEvent

PROGRESS_STEP = 0.05


class Reporter:
    """Writes JSON-line records for the host process.

    Progress is only written when it moves at least PROGRESS_STEP past the
    last value written. The first terminal record (success or failure)
    closes the reporter; any record written after that is dropped.
    """

    def __init__(self, stream: IO[str] | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.finished = False
        self.last_progress: float | None = None

    def _write(self, event: BaseModel, *, terminal: bool = False) -> bool:
        if self.finished:
            logger.debug("reporter closed; dropping {}", type(event).__name__)
            return False
        if terminal:
            self.finished = True
        payload: dict[str, Any] = event.model_dump()
        self.stream.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n")
        self.stream.flush()
        return True

    def progress(self, value: float) -> bool:
        if self.last_progress is not None and round(value - self.last_progress, 9) < PROGRESS_STEP:
            return False
        if not self._write(ProgressEvent(progress=value)):
            return False
        self.last_progress = value
        return True

    def complete(self, summary: PredictionSummary, files: list[str]) -> bool:
        return self._write(CompletedEvent(data=summary, files=files), terminal=True)

    def fail(self, code: str, description: str) -> bool:
        return self._write(ErrorEvent(code=code, description=description), terminal=True)
