"""
Tests for Pipeline Configuration
==================================
"""

import os

import pytest

from retention_pipeline.config import DEFAULT_COLUMN_MAP, PipelineConfig
from retention_pipeline.exceptions import ConfigError, PipelineError

EXAMPLE_CONFIG = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "..", "config", "pipeline.yaml"
)


def _write(temp_dir, text, name="pipeline.yaml"):
    path = os.path.join(temp_dir, name)
    with open(path, "w") as f:
        f.write(text)
    return path


class TestPipelineConfig:
    def test_defaults(self):
        config = PipelineConfig()
        assert config.retention_scale == "percent"
        assert config.orphan_policy == "placeholder"
        assert config.reload_mode == "academic_year"
        assert config.high_performer_threshold == 0.70
        assert config.column_map == DEFAULT_COLUMN_MAP
        assert config.report_dir is None

    def test_column_map_not_shared_between_instances(self):
        a = PipelineConfig()
        a.column_map["EXTRA"] = "unitid"
        assert "EXTRA" not in PipelineConfig().column_map

    def test_example_config_loads(self):
        config = PipelineConfig.from_yaml(EXAMPLE_CONFIG)
        assert config.report_dir == "data/reports"
        assert config.valid_sex_codes == (1, 2, 99)
        assert config.kpi_tolerance == pytest.approx(1e-9)

    def test_partial_yaml_keeps_defaults(self, temp_dir):
        path = _write(temp_dir, "orphan_policy: drop\nvalid_race_codes: [1, 2, 3]\n")
        config = PipelineConfig.from_yaml(path)
        assert config.orphan_policy == "drop"
        assert config.valid_race_codes == (1, 2, 3)
        assert config.retention_scale == "percent"

    def test_empty_yaml_gives_defaults(self, temp_dir):
        config = PipelineConfig.from_yaml(_write(temp_dir, ""))
        assert config == PipelineConfig()

    def test_unknown_key_rejected(self, temp_dir):
        path = _write(temp_dir, "orphan_polcy: drop\n")
        with pytest.raises(ConfigError, match="orphan_polcy"):
            PipelineConfig.from_yaml(path)

    def test_non_mapping_rejected(self, temp_dir):
        with pytest.raises(ConfigError):
            PipelineConfig.from_yaml(_write(temp_dir, "- a\n- b\n"))

    @pytest.mark.parametrize("overrides", [
        {"orphan_policy": "ignore"},
        {"retention_scale": "ratio"},
        {"reload_mode": "everything"},
        {"high_performer_threshold": 70},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ConfigError):
            PipelineConfig(**overrides)

    def test_config_error_is_pipeline_error(self):
        with pytest.raises(PipelineError):
            PipelineConfig.from_dict({"nope": 1})
