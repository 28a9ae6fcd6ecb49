"""Typed job payloads, decoded once when a job is claimed.

The stored payload is JSON. Each job type maps to one dataclass; unknown
keys are ignored so older producers keep working, but a known key with
the wrong type fails the job.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Union

from botfleet.shell.contract import JobType


class PayloadError(ValueError):
    pass


@dataclass(frozen=True)
class BacktestPayload:
    reason: str = ""
    generation: int | None = None
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MatrixPayload:
    """One backtest per cell (e.g. timeframe x horizon); the best cell is kept on the bot."""
    reason: str = ""
    cells: list = field(default_factory=list)


@dataclass(frozen=True)
class ImprovePayload:
    reason: str = ""
    focus: list = field(default_factory=list)


@dataclass(frozen=True)
class EvolvePayload:
    reason: str = ""
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CheckPayload:
    reason: str = ""


JobPayload = Union[BacktestPayload, MatrixPayload, ImprovePayload, EvolvePayload, CheckPayload]

PAYLOAD_TYPES: dict[str, type] = {
    JobType.BACKTESTER.value: BacktestPayload,
    JobType.MATRIX_RUN.value: MatrixPayload,
    JobType.IMPROVING.value: ImprovePayload,
    JobType.EVOLVING.value: EvolvePayload,
    JobType.HEALTH_CHECK.value: CheckPayload,
    JobType.PROMOTION_CHECK.value: CheckPayload,
    JobType.DEMOTION_CHECK.value: CheckPayload,
}

_EXPECTED = {"str": str, "dict": dict, "list": list, "int | None": (int, type(None))}


def decode_payload(job_type: str, raw: str | dict | None) -> JobPayload:
    cls = PAYLOAD_TYPES.get(job_type)
    if cls is None:
        raise PayloadError(f"Unknown job type: {job_type}")

    if raw is None or raw == "":
        data = {}
    elif isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise PayloadError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PayloadError(f"Payload must be an object, got {type(data).__name__}")

    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        expected = _EXPECTED.get(str(f.type))
        if expected and (not isinstance(value, expected) or isinstance(value, bool)):
            raise PayloadError(f"{job_type}.{f.name} must be {f.type}, got {type(value).__name__}")
        kwargs[f.name] = value

    if cls is MatrixPayload:
        for i, cell in enumerate(kwargs.get("cells", [])):
            if not isinstance(cell, dict):
                raise PayloadError(f"{job_type}.cells[{i}] must be an object, got {type(cell).__name__}")
    return cls(**kwargs)
