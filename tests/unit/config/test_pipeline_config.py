"""
Unit tests for the pipeline configuration models.

Tests required scientific parameters, cross-field dimension checks, the
annotation mapping forms and loading/saving of configuration files.
"""

import copy
import json
import re

import pytest

from cellpipe.config.pipeline_config import (
    AnnotationConfig,
    PipelineConfig,
    QCThresholds,
    UMAPConfig,
    pbmc3k_template,
)
from cellpipe.core.exceptions import ConfigurationError


@pytest.fixture
def config_dict(toy_config_dict):
    return copy.deepcopy(toy_config_dict)


@pytest.mark.unit
class TestPipelineConfig:
    """Test suite for model validation."""

    def test_valid_config(self, config_dict):
        config = PipelineConfig.from_dict(config_dict)

        assert config.qc.mito_prefix == "MT-"
        assert config.normalization.scale_factor == 10_000
        assert config.variable_features.flavor == "seurat"
        assert config.umap.init_pos == "pca"
        assert config.annotation.labels == ["Alpha", "Beta"]

    @pytest.mark.parametrize(
        "section,key",
        [
            ("qc", "max_mito_fraction"),
            ("variable_features", "n_features"),
            ("pca", "n_components"),
            ("clustering", "resolution"),
            ("markers", "min_log2_fold_change"),
        ],
    )
    def test_scientific_parameters_are_required(self, config_dict, section, key):
        del config_dict[section][key]

        with pytest.raises(ConfigurationError) as exc_info:
            PipelineConfig.from_dict(config_dict)

        assert any(e.startswith(f"{section}.{key}") for e in exc_info.value.details["errors"])

    def test_annotation_must_be_explicit(self, config_dict):
        del config_dict["annotation"]
        with pytest.raises(ConfigurationError, match="annotation"):
            PipelineConfig.from_dict(config_dict)

    def test_annotation_can_be_disabled(self, config_dict):
        config_dict["annotation"] = None
        config = PipelineConfig.from_dict(config_dict)
        assert config.annotation is None
        assert config.stage_plan()[-1] == "markers"

    def test_stage_plan(self, config_dict):
        config = PipelineConfig.from_dict(config_dict)
        assert config.stage_plan() == [
            "load",
            "qc_filter",
            "normalize",
            "variable_features",
            "scale",
            "pca",
            "neighbors",
            "cluster",
            "umap",
            "markers",
            "annotate",
        ]

    def test_unknown_key_rejected(self, config_dict):
        config_dict["pca"]["n_pcs"] = 10
        with pytest.raises(ConfigurationError, match="pca.n_pcs"):
            PipelineConfig.from_dict(config_dict)

    def test_n_dims_exceeds_components(self, config_dict):
        config_dict["neighbors"]["n_dims"] = 4
        with pytest.raises(ConfigurationError, match="n_dims"):
            PipelineConfig.from_dict(config_dict)

    def test_n_dims_not_checked_for_other_embeddings(self, config_dict):
        config_dict["neighbors"].update(n_dims=4, use_rep="umap")
        assert PipelineConfig.from_dict(config_dict).neighbors.n_dims == 4

    def test_components_may_equal_variable_features(self, config_dict):
        config_dict["pca"]["n_components"] = 5
        assert PipelineConfig.from_dict(config_dict).pca.n_components == 5

    def test_components_cannot_exceed_variable_features(self, config_dict):
        config_dict["pca"]["n_components"] = 6
        with pytest.raises(ConfigurationError, match="cannot exceed"):
            PipelineConfig.from_dict(config_dict)

    @pytest.mark.parametrize("name", ["", "a/b", "a\\b"])
    def test_invalid_name(self, config_dict, name):
        config_dict["name"] = name
        with pytest.raises(ConfigurationError, match="Invalid dataset name"):
            PipelineConfig.from_dict(config_dict)


@pytest.mark.unit
class TestSectionModels:
    """Test suite for individual sections."""

    def test_qc_bounds_order(self):
        with pytest.raises(ValueError, match="must be smaller than"):
            QCThresholds(min_features=10, max_features=10, max_mito_fraction=0.1)

    @pytest.mark.parametrize("fraction", [0.0, 1.5])
    def test_mito_fraction_range(self, fraction):
        with pytest.raises(ValueError):
            QCThresholds(min_features=1, max_features=10, max_mito_fraction=fraction)

    @pytest.mark.parametrize("n_components", [1, 4])
    def test_umap_dimensions(self, n_components):
        with pytest.raises(ValueError, match="2 or 3"):
            UMAPConfig(n_components=n_components)

    def test_annotation_mapping_form(self):
        config = AnnotationConfig(labels={"0": "T", "1": "B"})
        assert config.labels == {"0": "T", "1": "B"}

    @pytest.mark.parametrize("labels", [[], {}, ["T", " "], {"0": ""}])
    def test_annotation_rejects_empty_labels(self, labels):
        with pytest.raises(ValueError):
            AnnotationConfig(labels=labels)


@pytest.mark.unit
class TestConfigFiles:
    """Test suite for reading and writing configuration files."""

    def test_round_trip(self, config_dict, temp_workspace):
        config = PipelineConfig.from_dict(config_dict)
        path = temp_workspace / "config.json"

        config.save(path)

        assert PipelineConfig.load(path) == config

    def test_missing_file(self, temp_workspace):
        with pytest.raises(ConfigurationError, match="not found"):
            PipelineConfig.load(temp_workspace / "missing.json")

    def test_invalid_json(self, temp_workspace):
        path = temp_workspace / "broken.json"
        path.write_text("{ not json")
        with pytest.raises(ConfigurationError, match="not valid JSON") as exc_info:
            PipelineConfig.load(path)
        assert exc_info.value.details["path"] == str(path)

    def test_validation_errors_name_the_file(self, config_dict, temp_workspace):
        del config_dict["loader"]
        path = temp_workspace / "config.json"
        path.write_text(json.dumps(config_dict))

        with pytest.raises(ConfigurationError, match=re.escape(str(path))):
            PipelineConfig.load(path)

    def test_pbmc3k_template(self):
        config = pbmc3k_template()
        assert config.pca.n_components == 50
        assert config.neighbors.n_dims == 10
        assert len(config.annotation.labels) == 9
        assert config.loader.source.startswith("https://")
