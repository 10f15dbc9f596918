"""Data models for daemon verdicts and gateway results."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class ScanVerdict(str, enum.Enum):
    """Classification of a clamd ``INSTREAM`` reply."""

    CLEAN = "clean"
    INFECTED = "infected"
    ERROR = "error"


class ResultStatus(str, enum.Enum):
    SUCCESS = "success"
    VIRUS = "virus"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class StreamVerdict:
    """Outcome of streaming one input to clamd.

    Attributes:
        verdict: The classified reply.
        reply: Trimmed reply text, e.g. ``"stream: OK"`` or
            ``"stream: Eicar-Signature FOUND"``.
        sent_bytes: Payload bytes written to the daemon, excluding framing.
    """

    verdict: ScanVerdict
    reply: str
    sent_bytes: int = 0

    @property
    def clean(self) -> bool:
        return self.verdict is ScanVerdict.CLEAN

    @property
    def signature(self) -> str:
        """Virus name reported by clamd, or an empty string."""
        if self.verdict is not ScanVerdict.INFECTED:
            return ""
        _, _, tail = self.reply.rpartition(":")
        return tail.replace("FOUND", "").strip()


@dataclass(frozen=True, slots=True)
class Result:
    """Per-item entry of a gateway response.

    Attributes:
        status: ``"success"``, ``"virus"`` or ``"failed"``.
        details: Human-readable explanation or the echoed error.
        id: Form field name of the file, empty for non-scan endpoints.
    """

    status: ResultStatus
    details: str = ""
    id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.id:
            data["id"] = self.id
        data["status"] = self.status.value
        if self.details:
            data["details"] = self.details
        return data


@dataclass(slots=True)
class BatchOutcome:
    """Accumulated results of a scan request and the HTTP status they imply."""

    results: list[Result] = field(default_factory=list)
    status_code: int = 200

    def add(self, result: Result, status_code: int) -> None:
        self.results.append(result)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"results": [r.to_dict() for r in self.results]}
