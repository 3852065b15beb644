"""Voice distress scoring for active incidents.

The device extracts a handful of prosodic features while an SOS is live
and uploads them periodically.  The scorer here is a deliberately simple
threshold model: each distress emotion gets a high or low confidence
depending on one feature, and the distress score is their mean.  A model
service can replace it later behind the same ``analyze`` call.
"""

from __future__ import annotations

from typing import Final

from saferelay.models.enums import DistressLevel, EmotionLabel
from saferelay.models.incident import AudioFeatures

# feature thresholds
_FEAR_PITCH_HZ: Final[float] = 200.0
_CRYING_PROSODY_VARIANCE: Final[float] = 80.0
_PANIC_SPEECH_RATE_WPM: Final[float] = 200.0

# (high, low) confidence per emotion
_FEAR_CONFIDENCE: Final[tuple[float, float]] = (0.7, 0.3)
_CRYING_CONFIDENCE: Final[tuple[float, float]] = (0.8, 0.2)
_PANIC_CONFIDENCE: Final[tuple[float, float]] = (0.75, 0.25)

# lower bounds, checked highest first; "critical" comes from the analyzer threshold
_LEVEL_FLOORS: Final[tuple[tuple[float, DistressLevel], ...]] = (
    (0.65, DistressLevel.HIGH),
    (0.5, DistressLevel.MODERATE),
    (0.3, DistressLevel.LOW),
)


class DistressAssessment:
    __slots__ = ("confidences", "distress_level", "distress_score", "primary_emotion")

    def __init__(
        self,
        confidences: dict[EmotionLabel, float],
        primary_emotion: EmotionLabel,
        distress_score: float,
        distress_level: DistressLevel,
    ) -> None:
        self.confidences = confidences
        self.primary_emotion = primary_emotion
        self.distress_score = distress_score
        self.distress_level = distress_level

    @property
    def is_critical(self) -> bool:
        return self.distress_level == DistressLevel.CRITICAL


class DistressAnalyzer:
    """Score audio features into emotion confidences and a distress level.

    Parameters
    ----------
    critical_threshold:
        Distress score at or above which a reading is ``critical``.
    """

    __slots__ = ("_critical_threshold",)

    def __init__(self, *, critical_threshold: float = 0.75) -> None:
        self._critical_threshold = critical_threshold

    @property
    def critical_threshold(self) -> float:
        return self._critical_threshold

    def analyze(self, features: AudioFeatures) -> DistressAssessment:
        fear = _FEAR_CONFIDENCE[0] if features.pitch > _FEAR_PITCH_HZ else _FEAR_CONFIDENCE[1]
        crying = (
            _CRYING_CONFIDENCE[0]
            if features.prosody_variance > _CRYING_PROSODY_VARIANCE
            else _CRYING_CONFIDENCE[1]
        )
        panic = (
            _PANIC_CONFIDENCE[0]
            if features.speech_rate > _PANIC_SPEECH_RATE_WPM
            else _PANIC_CONFIDENCE[1]
        )

        score = round((fear + crying + panic) / 3, 4)
        confidences = {
            EmotionLabel.FEAR: fear,
            EmotionLabel.CRYING: crying,
            EmotionLabel.PANIC: panic,
            EmotionLabel.CALM: round(1.0 - score, 4),
        }
        primary = max(confidences, key=lambda label: confidences[label])
        return DistressAssessment(confidences, primary, score, self.level_for(score))

    def level_for(self, score: float) -> DistressLevel:
        if score >= self._critical_threshold:
            return DistressLevel.CRITICAL
        for floor, level in _LEVEL_FLOORS:
            if score >= floor:
                return level
        return DistressLevel.NONE
