from __future__ import annotations

from datetime import datetime

from ..models import Prediction, PredictionResolution

DIRECTION_WEIGHT = 0.4
MAGNITUDE_WEIGHT = 0.25
TIMING_WEIGHT = 0.2
CALIBRATION_WEIGHT = 0.15

# No timing model yet: every resolution gets the same timing credit.
TIMING_ACCURACY_PLACEHOLDER = 0.7
NEUTRAL_MAGNITUDE_ACCURACY = 0.5


def classify_move(move: float, flat_threshold: float = 1e-4) -> str:
    if move > flat_threshold:
        return "up"
    if move < -flat_threshold:
        return "down"
    return "flat"


def magnitude_accuracy(actual_magnitude: float, predicted_magnitude: float) -> float:
    if predicted_magnitude <= 0:
        return NEUTRAL_MAGNITUDE_ACCURACY
    error = abs(actual_magnitude - predicted_magnitude) / predicted_magnitude
    return max(0.0, min(1.0, 1.0 - error))


def calibration_accuracy(confidence: float, direction_correct: bool) -> float:
    outcome = 1.0 if direction_correct else 0.0
    return max(0.0, min(1.0, 1.0 - abs(confidence - outcome)))


def composite_score(
    direction_correct: bool,
    magnitude: float,
    timing: float,
    calibration: float,
) -> float:
    score = (
        DIRECTION_WEIGHT * (1.0 if direction_correct else 0.0)
        + MAGNITUDE_WEIGHT * magnitude
        + TIMING_WEIGHT * timing
        + CALIBRATION_WEIGHT * calibration
    )
    return max(0.0, min(1.0, score))


def score_prediction(
    prediction: Prediction,
    exit_price: float,
    resolved_at: datetime,
    flat_threshold: float = 1e-4,
) -> PredictionResolution:
    if prediction.id is None:
        raise ValueError("prediction must be persisted before it can be resolved")
    if prediction.entry_price <= 0:
        raise ValueError(f"invalid entry price for prediction {prediction.id}")
    move = (exit_price - prediction.entry_price) / prediction.entry_price
    actual_direction = classify_move(move, flat_threshold)
    direction_correct = prediction.predicted_direction == actual_direction
    actual_magnitude = abs(move)
    magnitude = magnitude_accuracy(actual_magnitude, prediction.predicted_magnitude)
    calibration = calibration_accuracy(prediction.confidence, direction_correct)
    return PredictionResolution(
        prediction_id=prediction.id,
        symbol=prediction.symbol,
        exit_price=exit_price,
        actual_direction=actual_direction,
        actual_magnitude=actual_magnitude,
        direction_correct=direction_correct,
        magnitude_accuracy=magnitude,
        timing_accuracy=TIMING_ACCURACY_PLACEHOLDER,
        calibration_score=calibration,
        composite_score=composite_score(
            direction_correct, magnitude, TIMING_ACCURACY_PLACEHOLDER, calibration
        ),
        resolved_at=resolved_at,
    )
