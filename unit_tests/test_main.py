"""
Unit tests for the command-line entry point.
"""

import json
import logging
import sys
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import main
from constraints import PointPair, constraint_to_dict


@pytest.fixture
def constraints_file(affine_pairs, temp_dir):
    src, dst = affine_pairs
    items = [constraint_to_dict(PointPair(src=tuple(map(float, s)), dst=tuple(map(float, d))))
             for s, d in zip(src, dst)]
    path = temp_dir / "constraints.json"
    path.write_text(json.dumps({'constraints': items}))
    return path


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestMain:
    """Test end-to-end CLI runs."""

    def test_load_constraints(self, constraints_file):
        constraints = main.load_constraints(str(constraints_file))

        assert len(constraints) == 6
        assert all(isinstance(c, PointPair) for c in constraints)

    def test_run_with_reference(self, constraints_file, utm_geotiff, source_raster, temp_dir, monkeypatch):
        out_base = temp_dir / "outputs"
        monkeypatch.setattr(sys, 'argv', [
            'main.py', '--constraints', str(constraints_file), '--reference', str(utm_geotiff),
            '--source', str(source_raster), '--method', 'affine', '--error-unit', 'meters',
            '--output-dir', str(out_base)])

        main.main()

        run_dir = next(out_base.glob('run_*'))
        assert (run_dir / 'session.json').exists()
        assert (run_dir / 'proj_pipeline.txt').read_text().startswith('+proj=pipeline')
        assert (run_dir / 'georeferenced.tfw').exists()
        assert (run_dir / 'georeferenced.prj').exists()
        assert (run_dir / 'georeferenced.tif').exists()
        report = json.loads((run_dir / 'registration_report.json').read_text())
        assert report['quality_metrics']['unit'] == 'meters'

    def test_missing_map_scale_exits(self, constraints_file, temp_dir, monkeypatch):
        monkeypatch.setattr(sys, 'argv', [
            'main.py', '--constraints', str(constraints_file), '--error-unit', 'mapmm',
            '--output-dir', str(temp_dir / "outputs")])

        with pytest.raises(SystemExit) as exc:
            main.main()
        assert exc.value.code == 1

    def test_no_input_exits(self, monkeypatch):
        monkeypatch.setattr(sys, 'argv', ['main.py'])

        with pytest.raises(SystemExit):
            main.main()
