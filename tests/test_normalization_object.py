#!/usr/bin/env python
# coding: utf-8


"""
Tests for funnorm.core.normalization_object and funnorm.core.controls.

Covers:
- Sex prediction and sex label validation
- Building normalization objects from intensity files
- Option and annotation validation
- Dict round-tripping and origin checks
- Control summaries, detection p-values and bead counts
"""


import numpy as np
import pandas as pd
import pytest

from conftest import make_channels, write_sample
from funnorm.core.controls import (
    extract_controls,
    extract_detection_pvalues,
    identify_bad_probes_beadnum,
)
from funnorm.core.normalization_object import (
    NormalizationObject,
    _chromosome_signal,
    compute_normalization_object,
    compute_normalization_objects,
    predict_sex,
    validate_sex_label,
)
from funnorm.core.signal import RGSet
from funnorm.errors import (
    BoundedMapError,
    ConfigurationError,
    InvalidAnnotationError,
    InvalidObjectError,
    InvalidSexLabelError,
    MissingFileError,
)
from funnorm.io.annotation import SUBSET_NAMES
from funnorm.io.data_utils import MU

BUILD_OPTIONS = {"number_quantiles": 100, "min_annotation_rows": 100}


def chry_names(annotation):
    """CpG probe names on chrY."""
    table = annotation.table
    return set(table.loc[(table["chr"] == "chrY") & table["target"].isin(["M", "U"]), "name"])


class TestSex:
    """Test sex prediction and labels"""

    def test_predict_scalar(self):
        assert predict_sex(10, 6) == "F"
        assert predict_sex(6, 10) == "M"
        assert predict_sex(10, 8) == "M"

    def test_predict_array(self):
        out = predict_sex(np.array([10, 6]), np.array([6, 10]), cutoff=-2)
        assert list(out) == ["F", "M"]

    def test_custom_cutoff(self):
        assert predict_sex(10, 6, cutoff=-5) == "M"

    @pytest.mark.parametrize("label", [None, np.nan, pd.NA, "NA"])
    def test_missing_labels(self, label):
        assert validate_sex_label(label) is None

    def test_valid_labels(self):
        assert validate_sex_label("M") == "M"
        assert validate_sex_label("F") == "F"

    @pytest.mark.parametrize("label", ["male", "m", 1, "X"])
    def test_invalid_labels(self, label):
        with pytest.raises(InvalidSexLabelError):
            validate_sex_label(label)

    def test_chromosome_signal_counts_zero_totals(self, annotation):
        names = sorted(chry_names(annotation))
        total = np.full(len(names), 1024.0)
        total[0] = 0
        mu = MU(M=pd.Series(total / 2, index=names), U=pd.Series(total / 2, index=names))
        assert _chromosome_signal(mu, annotation, "chrY") == 10.0

        total[: len(names) // 2 + 1] = 0
        mu = MU(M=pd.Series(total / 2, index=names), U=pd.Series(total / 2, index=names))
        assert _chromosome_signal(mu, annotation, "chrY") == -np.inf

    def test_chromosome_signal_without_probes(self, annotation):
        mu = MU(M=pd.Series(dtype=float), U=pd.Series(dtype=float))
        assert np.isnan(_chromosome_signal(mu, annotation, "chrX"))


class TestComputeNormalizationObject:
    """Test building a normalization object from intensity files"""

    def test_male_sample(self, annotation, male_basename):
        obj = compute_normalization_object(male_basename, annotation, **BUILD_OPTIONS)
        assert obj.name == "S1_R01C01"
        assert obj.predicted_sex == "M"
        assert obj.sex is None
        assert obj.array_id == "synthetic"
        assert not obj.is_normalized
        assert list(obj.quantiles) == list(SUBSET_NAMES)
        for subset in obj.quantiles.values():
            for target in ("M", "U"):
                q = subset[target]
                assert len(q) == 100
                assert np.all(np.diff(q) >= 0)
        assert obj.intensity_R > 0 and obj.intensity_G > 0
        assert obj.xy_diff == pytest.approx(obj.y_signal - obj.x_signal)
        assert obj.thresholds == {"detection": 0.01, "beadnum": 3}

    def test_female_sample(self, annotation, female_basename):
        obj = compute_normalization_object(
            female_basename, annotation, sex="F", **BUILD_OPTIONS
        )
        assert obj.predicted_sex == "F"
        assert obj.sex == "F"
        assert obj.xy_diff < -2
        # chrY probes of a female sample are not detected
        assert chry_names(annotation) <= set(obj.bad_probes_detectionp.index)

    def test_snp_betas(self, annotation, male_basename):
        obj = compute_normalization_object(male_basename, annotation, **BUILD_OPTIONS)
        assert sorted(obj.snp_betas.index) == ["rs0", "rs1"]
        assert obj.snp_betas.between(0, 1).all()

    def test_low_bead_count(self, tmp_path, annotation):
        probe = annotation.table[annotation.table["target"] == "M"].iloc[0]
        basename = write_sample(
            tmp_path, "LOW", annotation, seed=3, low_beads=[probe["address"]]
        )
        obj = compute_normalization_object(basename, annotation, **BUILD_OPTIONS)
        assert obj.bad_probes_beadnum[probe["name"]] == 1

    def test_invalid_options(self, annotation, male_basename):
        with pytest.raises(ConfigurationError, match="number_quantiles"):
            compute_normalization_object(
                male_basename, annotation, number_quantiles=99, min_annotation_rows=100
            )
        with pytest.raises(ConfigurationError, match="dye_intensity"):
            compute_normalization_object(
                male_basename, annotation, dye_intensity=50, **BUILD_OPTIONS
            )
        with pytest.raises(InvalidSexLabelError):
            compute_normalization_object(male_basename, annotation, sex="male", **BUILD_OPTIONS)

    def test_small_annotation(self, annotation, male_basename):
        with pytest.raises(InvalidAnnotationError, match="at least 100000"):
            compute_normalization_object(male_basename, annotation, number_quantiles=100)

    def test_missing_files(self, tmp_path, annotation):
        with pytest.raises(MissingFileError):
            compute_normalization_object(str(tmp_path / "absent"), annotation, **BUILD_OPTIONS)


class TestComputeNormalizationObjects:
    """Test building many normalization objects"""

    def test_order_and_declared_sex(self, annotation, male_basename, female_basename):
        objects = compute_normalization_objects(
            [male_basename, female_basename], annotation, sex=["M", "NA"], **BUILD_OPTIONS
        )
        assert [obj.name for obj in objects] == ["S1_R01C01", "S2_R02C01"]
        assert objects[0].sex == "M"
        assert objects[1].sex is None

    def test_sex_length_mismatch(self, annotation, male_basename):
        with pytest.raises(InvalidSexLabelError, match="1 sex labels"):
            compute_normalization_objects(
                [male_basename, male_basename], annotation, sex=["M"], **BUILD_OPTIONS
            )

    def test_failures_reported(self, tmp_path, annotation, male_basename):
        with pytest.raises(BoundedMapError) as excinfo:
            compute_normalization_objects(
                [male_basename, str(tmp_path / "absent")], annotation, **BUILD_OPTIONS
            )
        failure = excinfo.value.failures[0]
        assert failure.index == 1
        assert isinstance(failure.error, MissingFileError)
        assert isinstance(excinfo.value.results[0], NormalizationObject)


class TestObjectValidation:
    """Test normalization object validation and round-tripping"""

    def test_round_trip(self, annotation, male_basename):
        obj = compute_normalization_object(male_basename, annotation, **BUILD_OPTIONS)
        rebuilt = NormalizationObject.from_dict(obj.to_dict())
        assert rebuilt.basename == obj.basename
        pd.testing.assert_series_equal(rebuilt.controls, obj.controls)
        np.testing.assert_array_equal(
            rebuilt.quantiles["chrx"]["M"], obj.quantiles["chrx"]["M"]
        )

    def test_missing_field(self, annotation, male_basename):
        data = compute_normalization_object(male_basename, annotation, **BUILD_OPTIONS).to_dict()
        del data["controls"]
        with pytest.raises(InvalidObjectError, match="controls"):
            NormalizationObject.from_dict(data)

    def test_unknown_field(self, annotation, male_basename):
        data = compute_normalization_object(male_basename, annotation, **BUILD_OPTIONS).to_dict()
        data["colour"] = "blue"
        with pytest.raises(InvalidObjectError, match="colour"):
            NormalizationObject.from_dict(data)

    def test_foreign_origin(self, annotation, male_basename):
        data = compute_normalization_object(male_basename, annotation, **BUILD_OPTIONS).to_dict()
        data["origin"] = "somewhere.else"
        with pytest.raises(InvalidObjectError, match="was not built"):
            NormalizationObject.from_dict(data)


class TestControls:
    """Test control summaries and probe quality metrics"""

    def test_control_vector_layout(self, annotation):
        channels = make_channels(annotation, seed=4)
        controls = extract_controls(RGSet(R=channels["R"], G=channels["G"]), annotation)
        names = list(controls.index)
        assert names[:2] == ["bisulfite1", "bisulfite2"]
        assert names[2:4] == ["extension.G1", "extension.G2"]
        assert "hybe3" in names and "stain.G" in names and "targetrem2" in names
        assert names[-5:] == ["dye.bias", "oob.G.1%", "oob.G.50%", "oob.G.99%", "oob.ratio"]
        assert controls.notna().all()
        assert controls["dye.bias"] == pytest.approx(
            (controls["normC"] + controls["normG"]) / (controls["normA"] + controls["normT"])
        )

    def test_detection_pvalues(self, annotation):
        male = make_channels(annotation, seed=5, sex="M")
        female = make_channels(annotation, seed=5, sex="F")
        p_male = extract_detection_pvalues(RGSet(R=male["R"], G=male["G"]), annotation)
        p_female = extract_detection_pvalues(RGSet(R=female["R"], G=female["G"]), annotation)
        chry = list(chry_names(annotation))
        assert list(p_male.index) == annotation.probe_names
        assert p_male.between(0, 1).all()
        assert (p_male[chry] < 0.01).all()
        assert (p_female[chry] > 0.01).all()

    def test_beadnum_uses_smaller_count(self, annotation):
        channels = make_channels(annotation, seed=6)
        probe = annotation.table[
            (annotation.table["type"] == "i") & (annotation.table["target"] == "U")
        ].iloc[0]
        for dye in ("R", "G"):
            channels[dye].loc[probe["address"], "NBeads"] = 2
        bad = identify_bad_probes_beadnum(
            RGSet(R=channels["R"], G=channels["G"]), annotation, threshold=3
        )
        assert list(bad.index) == [probe["name"]]
        assert bad.iloc[0] == 2
