"""
Pluggable duration estimators used by the chain generator.

- TravelEstimator: one-way travel minutes between two places
- PrepTimeEstimator: total preparation minutes for an anchor type and energy level
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from planner.config_manager import SchedulerConfig, config as default_config
from planner.exceptions import TravelEstimationError
from planner.logger import get_logger
from planner.models import AnchorType

logger = get_logger("estimators")


@dataclass
class TravelEstimate:
    minutes: int
    method: str = "fixed"


class TravelEstimator(ABC):
    @abstractmethod
    def estimate(self, origin: str, destination: str) -> TravelEstimate:
        ...


class FixedTravelEstimator(TravelEstimator):
    def __init__(self, minutes: int = 30):
        self.minutes = minutes

    def estimate(self, origin: str, destination: str) -> TravelEstimate:
        return TravelEstimate(minutes=self.minutes, method="fixed")


class HttpTravelEstimator(TravelEstimator):
    """
    Calls an external travel-time service:

        GET {base_url}/estimate?origin=...&destination=...
        -> {"minutes": 18, "method": "transit"}

    Any transport or payload problem is raised as TravelEstimationError;
    the chain generator falls back to its default travel time.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get(self, params: dict) -> httpx.Response:
        if self._client is not None:
            return self._client.get(f"{self.base_url}/estimate", params=params)
        with httpx.Client(timeout=self.timeout) as client:
            return client.get(f"{self.base_url}/estimate", params=params)

    def estimate(self, origin: str, destination: str) -> TravelEstimate:
        params = {"origin": origin, "destination": destination}
        try:
            response = self._get(params)
            response.raise_for_status()
            payload = response.json()
            minutes = int(round(float(payload["minutes"])))
        except httpx.ConnectError as e:
            raise TravelEstimationError(f"Travel service unreachable at {self.base_url}") from e
        except httpx.TimeoutException as e:
            raise TravelEstimationError(f"Travel service timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise TravelEstimationError(
                f"Travel service returned HTTP {e.response.status_code}"
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise TravelEstimationError(f"Malformed travel estimate: {e}") from e
        except Exception as e:
            raise TravelEstimationError(f"Travel request failed: {e}") from e

        method = str(payload.get("method") or "service")
        logger.debug("Travel %s -> %s: %s min (%s)", origin, destination, minutes, method)
        return TravelEstimate(minutes=minutes, method=method)


class PrepTimeEstimator(ABC):
    @abstractmethod
    def estimate(self, anchor_type: AnchorType, energy: int) -> int:
        ...


class FixedPrepTimeEstimator(PrepTimeEstimator):
    def __init__(self, minutes: int = 15):
        self.minutes = minutes

    def estimate(self, anchor_type: AnchorType, energy: int) -> int:
        return self.minutes


class TemplatePrepTimeEstimator(PrepTimeEstimator):
    """Base minutes per anchor type, stretched for low energy and shortened for high."""

    def __init__(self, cfg: Optional[SchedulerConfig] = None):
        self.cfg = cfg or default_config

    def estimate(self, anchor_type: AnchorType, energy: int) -> int:
        base = self.cfg.PREP_MINUTES_BY_TYPE.get(
            anchor_type.value, self.cfg.PREP_MINUTES_BY_TYPE.get("other", 15)
        )
        level = min(5, max(1, int(energy)))
        multiplier = self.cfg.ENERGY_PREP_MULTIPLIERS.get(level, 1.0)
        return max(self.cfg.MIN_STEP_MINUTES, int(round(base * multiplier)))


def create_travel_estimator(cfg: Optional[SchedulerConfig] = None) -> TravelEstimator:
    cfg = cfg or default_config
    if cfg.TRAVEL_SERVICE_URL:
        return HttpTravelEstimator(cfg.TRAVEL_SERVICE_URL, timeout=cfg.TRAVEL_SERVICE_TIMEOUT)
    return FixedTravelEstimator(cfg.DEFAULT_TRAVEL_MINUTES)
