#!/usr/bin/env python3
"""
Tests for the triad command-line interface.

Tests cover:
- calibrate example-config output
- calibrate run with default settings, overrides, config file and output file
- calibrate run from known field magnitudes
- Error exit codes for missing files, invalid options and failed calibrations
"""

import pytest
import yaml
from typer.testing import CliRunner

from triad_calibration.calibration_io import load_calibration_result, save_measurements
from triad_calibration.cli import app
from triad_calibration.config import CalibrationConfig
from triad_calibration.measurement import Measurement
from triad_calibration.scoring import RobustMethod

runner = CliRunner()


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def measurements_file(tmp_path, clean_data):
    path = tmp_path / "measurements.yaml"
    save_measurements(clean_data.measurements, str(path))
    return path


# ============================================================================
# Commands
# ============================================================================

class TestExampleConfig:
    def test_prints_default_config(self):
        result = runner.invoke(app, ["calibrate", "example-config"])
        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        config = CalibrationConfig.from_dict(data['calibration'])
        assert config.method is RobustMethod.LMEDS
        assert config.max_iterations == 5000


class TestRunCommand:
    def test_default_method(self, measurements_file):
        result = runner.invoke(app, ["calibrate", "run", "--measurements", str(measurements_file)])
        assert result.exit_code == 0, result.output
        assert "Method:      lmeds" in result.output
        assert "Bias:" in result.output

    def test_overrides_and_output(self, tmp_path, measurements_file, clean_data):
        output = tmp_path / "results" / "calibration.yaml"
        result = runner.invoke(app, [
            "calibrate", "run",
            "--measurements", str(measurements_file),
            "--method", "ransac",
            "--threshold", "1e-6",
            "--seed", "3",
            "--output", str(output),
        ])
        assert result.exit_code == 0, result.output
        assert "Result written to" in result.output

        saved = load_calibration_result(str(output))
        assert saved.method is RobustMethod.RANSAC
        assert saved.parameters.allclose(clean_data.truth, atol=1e-9)
        assert saved.inliers_data.num_inliers == int((~clean_data.outliers).sum())

    def test_config_file(self, tmp_path, measurements_file):
        config_path = tmp_path / "config.yaml"
        CalibrationConfig(method=RobustMethod.MSAC, threshold=1e-6, seed=1).save_to_yaml(
            str(config_path))
        result = runner.invoke(app, [
            "calibrate", "run",
            "--measurements", str(measurements_file),
            "--config", str(config_path),
        ])
        assert result.exit_code == 0, result.output
        assert "Method:      msac" in result.output

    def test_missing_measurements_file(self, tmp_path):
        result = runner.invoke(app, [
            "calibrate", "run", "--measurements", str(tmp_path / "missing.yaml"),
        ])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_invalid_method(self, measurements_file):
        result = runner.invoke(app, [
            "calibrate", "run", "--measurements", str(measurements_file), "--method", "hough",
        ])
        assert result.exit_code == 1

    def test_not_enough_measurements(self, tmp_path):
        path = tmp_path / "few.yaml"
        save_measurements([Measurement([1.0, 0.0, 0.0], [1.0, 0.0, 0.0])] * 2, str(path))
        result = runner.invoke(app, ["calibrate", "run", "--measurements", str(path)])
        assert result.exit_code == 1
        assert "Calibration failed" in result.output

    def test_known_norm(self, tmp_path, make_data):
        data = make_data(common_axis=True)
        path = tmp_path / "upper.yaml"
        output = tmp_path / "calibration.yaml"
        save_measurements(data.measurements, str(path))
        result = runner.invoke(app, [
            "calibrate", "run",
            "--measurements", str(path),
            "--norm", "1.0",
            "--output", str(output),
        ])
        assert result.exit_code == 0, result.output

        saved = load_calibration_result(str(output))
        assert saved.parameters.allclose(data.truth, atol=1e-9)
        assert saved.parameters.is_common_axis()

    def test_invalid_norm(self, measurements_file):
        result = runner.invoke(app, [
            "calibrate", "run", "--measurements", str(measurements_file), "--norm=-1",
        ])
        assert result.exit_code == 1
        assert "norm" in result.output
