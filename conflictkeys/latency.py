"""Latency distributions and store latency profiles.

Every store round-trip yields a latency in milliseconds drawn from an
opaque LatencyDistribution. Profiles are TOML files under
conflictkeys/profiles/ and are loaded by name.

Key types:
- LatencyDistribution: ABC for latency sampling
- FixedLatency: Deterministic latency (testing)
- LognormalLatency: Lognormal distribution with minimum floor
- StoreLatencyProfile: grv/commit distributions for one profile
"""

from __future__ import annotations

import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import numpy as np


# ---------------------------------------------------------------------------
# Latency distributions
# ---------------------------------------------------------------------------

class LatencyDistribution(ABC):
    """Opaque latency distribution that samples values."""

    @abstractmethod
    def sample(self, rng: np.random.RandomState) -> float:
        """Draw a latency sample in milliseconds.

        Args:
            rng: Seeded random state for determinism.
        """
        ...


@dataclass(frozen=True)
class FixedLatency(LatencyDistribution):
    """Fixed (deterministic) latency. Useful for testing."""
    latency_ms: float

    def sample(self, rng: np.random.RandomState) -> float:
        return self.latency_ms


@dataclass(frozen=True)
class LognormalLatency(LatencyDistribution):
    """Lognormal distribution with minimum floor.

    - mu = ln(median)
    - sigma controls tail heaviness
    - min_latency_ms is the network floor
    """
    mu: float
    sigma: float
    min_latency_ms: float = 0.1

    def sample(self, rng: np.random.RandomState) -> float:
        raw = rng.lognormal(mean=self.mu, sigma=self.sigma)
        return max(raw, self.min_latency_ms)

    @classmethod
    def from_median(cls, median_ms: float, sigma: float,
                    min_latency_ms: float = 0.1) -> LognormalLatency:
        """Construct from median latency (convenience)."""
        return cls(mu=float(np.log(median_ms)), sigma=sigma,
                   min_latency_ms=min_latency_ms)


# ---------------------------------------------------------------------------
# Profile loading
# ---------------------------------------------------------------------------

_PROFILES_DIR = Path(__file__).parent / "profiles"
_PROFILE_CACHE: dict[str, dict] = {}


@dataclass(frozen=True)
class StoreLatencyProfile:
    """Latency distributions for the two store round-trips."""
    name: str
    grv_latency: LatencyDistribution
    commit_latency: LatencyDistribution


def available_profiles() -> list[str]:
    return sorted(p.stem for p in _PROFILES_DIR.glob("*.toml"))


def _load_raw_profile(name: str) -> dict:
    if name in _PROFILE_CACHE:
        return _PROFILE_CACHE[name]

    toml_path = _PROFILES_DIR / f"{name}.toml"
    if not toml_path.exists():
        raise ValueError(
            f"Unknown store profile: {name!r}. Valid: {available_profiles()}"
        )

    with open(toml_path, "rb") as f:
        profile = tomllib.load(f)

    _PROFILE_CACHE[name] = profile
    return profile


def _build_distribution(section: dict) -> LatencyDistribution:
    dist = section.get("distribution", "fixed")
    if dist == "fixed":
        return FixedLatency(latency_ms=float(section["latency_ms"]))
    if dist == "lognormal":
        return LognormalLatency.from_median(
            median_ms=section["median_ms"],
            sigma=section["sigma"],
            min_latency_ms=section.get("min_latency_ms", 0.1),
        )
    raise ValueError(f"Unknown latency distribution: {dist!r}")


def load_profile(name: str) -> StoreLatencyProfile:
    """Load a store latency profile by name (cached)."""
    raw = _load_raw_profile(name)
    return StoreLatencyProfile(
        name=name,
        grv_latency=_build_distribution(raw["grv"]),
        commit_latency=_build_distribution(raw["commit"]),
    )
