"""
Unit tests for defaults module.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from defaults import (
    DATUM_POLICIES,
    DEFAULT_DATUM_POLICY,
    DEFAULT_DEBUG_LEVEL,
    DEFAULT_ERROR_UNIT,
    DEFAULT_METHOD,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_RANSAC_ITERATIONS,
    DEFAULT_RANSAC_THRESHOLD,
    DEFAULT_ROBUST_LOSS,
    DEFAULT_TPS_LAMBDA,
    ERROR_UNITS,
    GLOBAL_METHODS,
    LOCAL_MODELS,
    ROBUST_LOSSES,
)


class TestDefaults:
    """Test default configuration values."""

    def test_defaults_are_members_of_their_choices(self):
        """Every default must be one of the accepted values."""
        assert DEFAULT_METHOD in GLOBAL_METHODS
        assert DEFAULT_ERROR_UNIT in ERROR_UNITS
        assert DEFAULT_ROBUST_LOSS in ROBUST_LOSSES
        assert DEFAULT_DATUM_POLICY in DATUM_POLICIES

    def test_ransac_defaults(self):
        assert DEFAULT_RANSAC_THRESHOLD > 0
        assert isinstance(DEFAULT_RANSAC_ITERATIONS, int)
        assert DEFAULT_RANSAC_ITERATIONS > 0

    def test_local_defaults(self):
        assert set(LOCAL_MODELS) == {'tps', 'ffd'}
        assert DEFAULT_TPS_LAMBDA >= 0

    def test_output_defaults(self):
        assert DEFAULT_DEBUG_LEVEL in ['none', 'intermediate', 'high']
        assert isinstance(DEFAULT_OUTPUT_DIR, str)
