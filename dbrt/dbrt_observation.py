"""
DBRT Range Observation Model
============================

Per-pixel likelihood of a depth measurement given a predicted (rendered)
depth, after Wuthrich et al., "Probabilistic Object Tracking using a Range
Camera", IROS 2013.

The density is a mixture of a uniform tail over [0, max_depth] and a
measurement term whose noise grows quadratically with range:

    sigma = model_sigma + sigma_factor * observation^2

Four regimes:

    visible,  finite prediction    tail + (1-tw) * N(obs; pred, sigma)
    visible,  infinite prediction  tail
    occluded, infinite prediction  tail + (1-tw) * Exp(rate) (*) N(0, sigma)
    occluded, finite prediction    same convolution truncated to [0, pred]

where the occluder depth has an exponential prior with
rate = ln(2) / half_life_depth.

Author: DBRT developers
License: GPL-3.0-or-later
"""

import math
from dataclasses import dataclass

import numpy as np
from scipy.special import erf

from .dbrt_errors import ConfigurationError, NumericalError

_SQRT_2PI = math.sqrt(2.0 * math.pi)
_SQRT_2 = math.sqrt(2.0)


@dataclass(frozen=True)
class RangeModelParameters:
    """Immutable range-sensor model parameters."""
    tail_weight: float = 0.01
    model_sigma: float = 0.003
    sigma_factor: float = 0.00142478
    half_life_depth: float = 1.0
    max_depth: float = 6.0

    def __post_init__(self):
        if not 0.0 < self.tail_weight < 1.0:
            raise ConfigurationError(
                f"tail_weight must lie in (0, 1), got {self.tail_weight}")
        if self.model_sigma < 0.0 or self.sigma_factor < 0.0:
            raise ConfigurationError("model_sigma and sigma_factor must be >= 0")
        if self.model_sigma == 0.0 and self.sigma_factor == 0.0:
            raise ConfigurationError(
                "model_sigma and sigma_factor cannot both be zero")
        if self.half_life_depth <= 0.0:
            raise ConfigurationError(
                f"half_life_depth must be positive, got {self.half_life_depth}")
        if self.max_depth <= 0.0:
            raise ConfigurationError(
                f"max_depth must be positive, got {self.max_depth}")

    @property
    def exponential_rate(self) -> float:
        return -math.log(0.5) / self.half_life_depth

    @property
    def tail_density(self) -> float:
        return self.tail_weight / self.max_depth


class RangeObservationModel:
    """
    Depth-pixel likelihood with an occlusion regime.

    Scalar protocol (one context at a time, not thread-safe)::

        model.condition(predicted_depth, occlusion)
        p = model.probability(observed_depth)

    Threads evaluating concurrently must each hold their own instance
    (see ``copy``). Whole images go through ``probability_image`` /
    ``log_likelihood`` which take the context as arguments and keep no state.
    """

    def __init__(self, parameters: RangeModelParameters = None):
        self.parameters = parameters or RangeModelParameters()

        p = self.parameters
        self._tail = p.tail_density
        self._body = 1.0 - p.tail_weight
        self._rate = p.exponential_rate
        self._model_sigma = p.model_sigma
        self._sigma_factor = p.sigma_factor

        # Observation context
        self._prediction = None
        self._occlusion = False

    def copy(self) -> "RangeObservationModel":
        """Fresh instance with the same parameters and an empty context."""
        return RangeObservationModel(self.parameters)

    def condition(self, predicted_depth: float, occlusion: bool):
        """Set the context consumed by the next probability query."""
        self._prediction = float(predicted_depth)
        self._occlusion = bool(occlusion)

    def sigma(self, observation: float) -> float:
        return self._model_sigma + self._sigma_factor * observation * observation

    def probability(self, observation: float) -> float:
        prediction = self._prediction
        if prediction is None:
            raise NumericalError("probability queried before condition()")

        sigma = self.sigma(observation)
        rate = self._rate

        if not self._occlusion:
            if math.isinf(prediction):
                return self._tail
            diff = prediction - observation
            return self._tail + self._body * math.exp(
                -(diff * diff) / (2.0 * sigma * sigma)) / (_SQRT_2PI * sigma)

        if math.isinf(prediction):
            return self._tail + self._body * rate * math.exp(
                0.5 * rate * (rate * sigma * sigma - 2.0 * observation))

        return self._tail + self._body * rate * math.exp(
            0.5 * rate * (2.0 * prediction - 2.0 * observation + rate * sigma * sigma)
        ) * (1.0 + math.erf(
            (prediction - observation + rate * sigma * sigma) / (_SQRT_2 * sigma))
        ) / (2.0 * (math.exp(prediction * rate) - 1.0))

    def log_probability(self, observation: float) -> float:
        try:
            density = self.probability(observation)
        except (ZeroDivisionError, OverflowError) as exc:
            raise NumericalError(
                f"range density undefined for prediction={self._prediction}, "
                f"observation={observation}") from exc
        if not density > 0.0 or math.isinf(density):
            raise NumericalError(
                f"range density {density} is not strictly positive "
                f"(prediction={self._prediction}, occlusion={self._occlusion}, "
                f"observation={observation})")
        return math.log(density)

    # ------------------------------------------------------------------
    # Vectorized image path
    # ------------------------------------------------------------------

    def probability_image(self, observed: np.ndarray, predicted: np.ndarray,
                          occluded: np.ndarray) -> np.ndarray:
        """Per-pixel density for whole images; same law as ``probability``."""
        obs = np.asarray(observed, dtype=float)
        pred = np.asarray(predicted, dtype=float)
        occ = np.asarray(occluded, dtype=bool)

        rate = self._rate
        sigma = self._model_sigma + self._sigma_factor * obs * obs
        finite = np.isfinite(pred)
        # Placeholder keeps masked-out lanes free of inf arithmetic
        pred_f = np.where(finite, pred, 1.0)

        with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
            diff = pred_f - obs
            gaussian = np.exp(-(diff * diff) / (2.0 * sigma * sigma)) / (_SQRT_2PI * sigma)

            occluder_inf = rate * np.exp(0.5 * rate * (rate * sigma * sigma - 2.0 * obs))

            # exp(p*r) / (exp(p*r) - 1) == 1 / (1 - exp(-p*r)), overflow-free form
            occluder_fin = (
                occluder_inf
                * (1.0 + erf((diff + rate * sigma * sigma) / (_SQRT_2 * sigma)))
                / (-2.0 * np.expm1(-pred_f * rate))
            )

            body = np.where(
                occ,
                np.where(finite, occluder_fin, occluder_inf),
                np.where(finite, gaussian, 0.0),
            )
        return self._tail + self._body * body

    def log_likelihood(self, observed: np.ndarray, predicted: np.ndarray,
                       occluded: np.ndarray) -> float:
        """Sum of per-pixel log densities over valid observed pixels.

        Non-finite or non-positive readings are missing pixels and skipped.
        """
        obs = np.asarray(observed, dtype=float)
        valid = np.isfinite(obs) & (obs > 0.0)
        if not np.any(valid):
            return 0.0

        density = self.probability_image(
            obs[valid], np.asarray(predicted, dtype=float)[valid],
            np.asarray(occluded, dtype=bool)[valid])
        if not np.all(density > 0.0) or not np.all(np.isfinite(density)):
            raise NumericalError("non-positive or non-finite range density in image")
        return float(np.sum(np.log(density)))
