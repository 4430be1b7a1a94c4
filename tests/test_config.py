"""Tests for config loading.

Tests:
- load_run_config: valid TOML -> RunConfig
- Defaults when sections are missing
- Validation: invalid configs raise ConfigurationError, warnings are logged
- Seed handling: from config, override, None
- make_database: seeded RNG, store settings applied
"""

import logging
import os
import tempfile

import pytest

from conflictkeys.config import (
    ConfigurationError,
    build_run_config,
    load_run_config,
    validate_config,
)
from conflictkeys.latency import FixedLatency, LognormalLatency
from conflictkeys.store import ReportingFault


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def write_toml(content: str) -> str:
    """Write TOML content to a temp file and return its path."""
    fd, path = tempfile.mkstemp(suffix=".toml")
    os.write(fd, content.encode())
    os.close(fd)
    return path


FULL_CONFIG = """\
[simulation]
seed = 42

[workload]
test_duration_ms = 5000
actors_per_client = 2
key_prefix = "Conflicts"
key_bytes = 40
node_count = 50
read_conflict_range_count_per_tx = 3
write_conflict_range_count_per_tx = 2

[store]
profile = "wan"
mvcc_window_versions = 1000000
versions_per_ms = 500
transient_error_probability = 0.1
reporting_fault = "none"
"""


def errors_for(raw):
    errors, _ = validate_config(raw)
    return errors


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadRunConfig:
    def test_full_config(self):
        path = write_toml(FULL_CONFIG)
        try:
            config = load_run_config(path)
        finally:
            os.unlink(path)

        wl = config.workload
        assert config.seed == 42
        assert wl.seed == 42
        assert wl.test_duration_ms == 5000.0
        assert wl.actors_per_client == 2
        assert wl.keyspace.prefix == b"Conflicts"
        assert wl.keyspace.key_bytes == 40
        assert wl.keyspace.node_count == 50
        assert wl.read_conflict_range_count == 3.0
        assert wl.write_conflict_range_count == 2.0

        store = config.store
        assert isinstance(store.commit_latency, LognormalLatency)
        assert store.mvcc_window_versions == 1_000_000
        assert store.versions_per_ms == 500
        assert store.transient_error_probability == 0.1
        assert store.reporting_fault is ReportingFault.NONE

    def test_empty_config_uses_defaults(self):
        config = build_run_config({})
        wl = config.workload
        assert config.seed is None
        assert wl.test_duration_ms == 10_000.0
        assert wl.actors_per_client == 1
        assert wl.keyspace.prefix == b"ReportConflictingKeysWorkload"
        assert wl.keyspace.key_bytes == 64
        assert wl.keyspace.node_count == 100
        assert config.store.grv_latency == FixedLatency(0.5)
        assert config.store.reporting_fault is ReportingFault.NONE

    def test_sample_config_loads(self):
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config = load_run_config(os.path.join(root, "cfg.toml"))
        assert config.seed == 42

    def test_reporting_fault(self):
        config = build_run_config({"store": {"reporting_fault": "fabricate"}})
        assert config.store.reporting_fault is ReportingFault.FABRICATE

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_run_config("/nonexistent/cfg.toml")


class TestSeed:
    def test_override(self):
        config = build_run_config({"simulation": {"seed": 1}}, seed_override=99)
        assert config.seed == 99
        assert config.workload.seed == 99

    def test_override_without_simulation_section(self):
        assert build_run_config({}, seed_override=5).seed == 5

    def test_override_does_not_mutate_input(self):
        raw = {"simulation": {"seed": 1}}
        build_run_config(raw, seed_override=99)
        assert raw == {"simulation": {"seed": 1}}

    def test_make_database_deterministic(self):
        config = build_run_config({"simulation": {"seed": 3}})
        db1 = config.make_database()
        db2 = config.make_database()
        assert db1 is not db2
        assert db1.config == config.store
        # Same seed, same latency draws
        profile = build_run_config({"simulation": {"seed": 3}, "store": {"profile": "wan"}})
        a, b = profile.make_database(), profile.make_database()
        assert next(a.get_read_version()) == next(b.get_read_version())


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_valid(self):
        assert validate_config({}) == ([], [])

    @pytest.mark.parametrize("raw", [
        {"simulation": {"seed": -1}},
        {"simulation": {"seed": "abc"}},
        {"workload": {"test_duration_ms": 0}},
        {"workload": {"actors_per_client": 0}},
        {"workload": {"actors_per_client": 1.5}},
        {"workload": {"read_conflict_range_count_per_tx": 0.5}},
        {"workload": {"write_conflict_range_count_per_tx": 0}},
        {"workload": {"node_count": 0}},
        {"workload": {"key_bytes": 20}},
        {"store": {"profile": "nonexistent"}},
        {"store": {"transient_error_probability": 1.0}},
        {"store": {"transient_error_probability": -0.1}},
        {"store": {"mvcc_window_versions": 0}},
        {"store": {"versions_per_ms": 0}},
        {"store": {"reporting_fault": "bogus"}},
    ])
    def test_invalid(self, raw):
        assert len(errors_for(raw)) == 1

    def test_multiple_errors_collected(self):
        raw = {
            "workload": {"test_duration_ms": -5, "node_count": 0},
            "store": {"profile": "nonexistent"},
        }
        assert len(errors_for(raw)) == 3

    def test_configuration_error_lists_errors(self):
        with pytest.raises(ConfigurationError) as excinfo:
            build_run_config({"workload": {"actors_per_client": 0}})
        assert len(excinfo.value.errors) == 1
        assert "actors_per_client" in str(excinfo.value)

    @pytest.mark.parametrize("raw", [
        {"workload": {"node_count": 1}},
        {"workload": {"read_conflict_range_count_per_tx": 500}},
        {"store": {"transient_error_probability": 0.75}},
        {"store": {"reporting_fault": "suppress"}},
    ])
    def test_warnings(self, raw):
        errors, warnings = validate_config(raw)
        assert errors == []
        assert len(warnings) == 1

    def test_non_ascii_prefix_accepted(self):
        """U+00FF encodes to c3 bf, an ordinary user key."""
        config = build_run_config({"workload": {"key_prefix": "\u00ffsys"}})
        assert config.workload.keyspace.prefix == b"\xc3\xbfsys"

    def test_warnings_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="conflictkeys.config"):
            build_run_config({"store": {"reporting_fault": "suppress"}})
        assert "expected to fail" in caplog.text
