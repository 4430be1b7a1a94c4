"""Configuration parsing and validation.

This module contains:
- load_run_config(): the entry point turning a TOML file into a RunConfig
- validate_config(): error/warning collection over the raw TOML dict
- build_run_config(): construction from an already-parsed dict

Store latency profiles live in conflictkeys/profiles/*.toml and are
loaded by conflictkeys.latency.load_profile().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import tomllib

from conflictkeys.keys import Keyspace
from conflictkeys.latency import available_profiles, load_profile
from conflictkeys.simulation import WorkloadConfig
from conflictkeys.store import Database, ReportingFault, StoreConfig

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "ReportConflictingKeysWorkload"


# ---------------------------------------------------------------------------
# Configuration error
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Fatal configuration error(s)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


@dataclass(frozen=True)
class RunConfig:
    """Everything a run needs, fully constructed."""
    workload: WorkloadConfig
    store: StoreConfig
    seed: int | None

    def make_database(self) -> Database:
        """Fresh Database with an RNG derived from the run seed."""
        rng = (np.random.RandomState(self.seed + 1000)
               if self.seed is not None else np.random.RandomState())
        return Database(self.store, rng=rng)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_run_config(
    config_path: str,
    *,
    seed_override: int | None = None,
) -> RunConfig:
    """Load and validate run configuration from a TOML file.

    Args:
        config_path: Path to TOML configuration file.
        seed_override: If provided, overrides the seed in the config file.
    """
    with open(config_path, "rb") as f:
        raw = tomllib.load(f)
    return build_run_config(raw, seed_override=seed_override)


def build_run_config(raw: dict, *, seed_override: int | None = None) -> RunConfig:
    if seed_override is not None:
        raw = dict(raw)
        raw["simulation"] = dict(raw.get("simulation", {}), seed=seed_override)

    errors, warnings = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)
    for warning in warnings:
        logger.warning(warning)

    seed = raw.get("simulation", {}).get("seed")
    return RunConfig(
        workload=_build_workload(raw.get("workload", {}), seed),
        store=_build_store(raw.get("store", {})),
        seed=seed,
    )


def _build_workload(wl_cfg: dict, seed: int | None) -> WorkloadConfig:
    keyspace = Keyspace(
        prefix=wl_cfg.get("key_prefix", DEFAULT_KEY_PREFIX).encode("utf-8"),
        key_bytes=wl_cfg.get("key_bytes", 64),
        node_count=wl_cfg.get("node_count", 100),
    )
    return WorkloadConfig(
        keyspace=keyspace,
        test_duration_ms=float(wl_cfg.get("test_duration_ms", 10_000.0)),
        actors_per_client=wl_cfg.get("actors_per_client", 1),
        read_conflict_range_count=float(wl_cfg.get("read_conflict_range_count_per_tx", 1)),
        write_conflict_range_count=float(wl_cfg.get("write_conflict_range_count_per_tx", 1)),
        seed=seed,
    )


def _build_store(store_cfg: dict) -> StoreConfig:
    profile = load_profile(store_cfg.get("profile", "instant"))
    return StoreConfig(
        grv_latency=profile.grv_latency,
        commit_latency=profile.commit_latency,
        mvcc_window_versions=store_cfg.get("mvcc_window_versions", 5_000_000),
        versions_per_ms=store_cfg.get("versions_per_ms", 1000),
        transient_error_probability=store_cfg.get("transient_error_probability", 0.0),
        reporting_fault=ReportingFault(store_cfg.get("reporting_fault", "none")),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_config(config: dict) -> tuple[list[str], list[str]]:
    """Validate configuration and return errors/warnings.

    Returns:
        (errors, warnings) where:
        - errors: List of fatal configuration errors
        - warnings: List of non-fatal warnings
    """
    errors = []
    warnings = []

    sim = config.get("simulation", {})
    seed = sim.get("seed")
    if seed is not None and (not isinstance(seed, int) or seed < 0):
        errors.append(f"simulation.seed must be a non-negative integer, got {seed!r}")

    wl = config.get("workload", {})
    duration = wl.get("test_duration_ms", 10_000.0)
    if duration <= 0:
        errors.append(f"workload.test_duration_ms must be > 0, got {duration}")

    actors = wl.get("actors_per_client", 1)
    if not isinstance(actors, int) or actors < 1:
        errors.append(f"workload.actors_per_client must be an integer >= 1, got {actors!r}")

    for name in ("read_conflict_range_count_per_tx", "write_conflict_range_count_per_tx"):
        count = wl.get(name, 1)
        if count < 1:
            errors.append(f"workload.{name} must be >= 1, got {count}")
        elif count > 100:
            warnings.append(f"workload.{name} = {count} makes every transaction span most of the keyspace")

    node_count = wl.get("node_count", 100)
    if not isinstance(node_count, int) or node_count < 1:
        errors.append(f"workload.node_count must be an integer >= 1, got {node_count!r}")
    elif node_count == 1:
        warnings.append("workload.node_count = 1 makes every range identical; every tx2 will conflict")

    prefix = wl.get("key_prefix", DEFAULT_KEY_PREFIX)
    key_bytes = wl.get("key_bytes", 64)
    if len(prefix.encode("utf-8")) + 16 > key_bytes:
        errors.append(
            f"workload.key_bytes ({key_bytes}) must be >= len(key_prefix) + 16 "
            f"({len(prefix.encode('utf-8')) + 16})"
        )

    store = config.get("store", {})
    profile = store.get("profile", "instant")
    valid_profiles = available_profiles()
    if profile not in valid_profiles:
        errors.append(f"store.profile must be one of {valid_profiles}, got '{profile}'")

    p = store.get("transient_error_probability", 0.0)
    if not 0.0 <= p < 1.0:
        errors.append(f"store.transient_error_probability must be in [0, 1), got {p}")
    elif p > 0.5:
        warnings.append(f"store.transient_error_probability = {p} leaves few iterations with a verdict")

    window = store.get("mvcc_window_versions", 5_000_000)
    if window <= 0:
        errors.append(f"store.mvcc_window_versions must be > 0, got {window}")

    vpm = store.get("versions_per_ms", 1000)
    if vpm <= 0:
        errors.append(f"store.versions_per_ms must be > 0, got {vpm}")

    fault = store.get("reporting_fault", "none")
    valid_faults = [f.value for f in ReportingFault]
    if fault not in valid_faults:
        errors.append(f"store.reporting_fault must be one of {valid_faults}, got '{fault}'")
    elif fault != "none":
        warnings.append(f"store.reporting_fault = '{fault}': the run is expected to fail")

    return errors, warnings
