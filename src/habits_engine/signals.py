"""Translate platform sleep-detection results into confirmation pulses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .presence import PresenceSignal, SignalKind

CONFIDENCE_THRESHOLD = 75
MAX_STILLNESS_LEVEL = 1


@dataclass(frozen=True, slots=True)
class SleepClassification:
    """A periodic sleep-likelihood sample.

    Attributes:
        timestamp: When the sample was taken, epoch millis.
        confidence: Likelihood of sleep, 0-100.
        light: Ambient light level, 1 (dark) to 6.
        motion: Device motion level, 1 (still) to 6.
    """

    timestamp: int
    confidence: int
    light: int
    motion: int


@dataclass(frozen=True, slots=True)
class SleepSegment:
    """A detected block of sleep reported after the fact."""

    start: int
    end: int
    successful: bool = True


def confirmation_from_classification(
    sample: SleepClassification,
) -> Optional[PresenceSignal]:
    if sample.confidence >= CONFIDENCE_THRESHOLD and (
        sample.light <= MAX_STILLNESS_LEVEL or sample.motion <= MAX_STILLNESS_LEVEL
    ):
        return PresenceSignal(SignalKind.SLEEP_CONFIRMED, sample.timestamp)
    return None


def confirmation_from_segment(segment: SleepSegment, now: int) -> Optional[PresenceSignal]:
    if segment.successful and segment.start <= now <= segment.end:
        return PresenceSignal(SignalKind.SLEEP_CONFIRMED, now)
    return None
