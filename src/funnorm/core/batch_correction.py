#!/usr/bin/env python
# coding: utf-8


"""
Cross-sample batch correction of signal quantiles.

Control-probe summaries of all samples form a control matrix whose leading
principal components are taken as technical covariates. Each probe subset's
quantile functions are regressed on these covariates and replaced by the
residuals plus the cross-sample mean, removing technical variation from the
targets used later to normalize each sample.

Key Components
--------------
- ``impute_matrix()`` – row-mean imputation with a global fallback
- ``control_matrix()`` – imputed, standardized and clipped control summaries
- ``design_matrix()`` – PCA scores of the control matrix
- ``normalize_quantiles()`` – least-squares removal of design effects
- ``normalize_objects()`` – the full correction over a set of objects, pooled
  or stratified by sex
"""


from collections import Counter
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from funnorm.core.normalization_object import (
    DesignStrategy,
    NormalizationObject,
    predict_sex,
    validate_sex_label,
)
from funnorm.errors import (
    ConfigurationError,
    InsufficientSamplesError,
    InvalidObjectError,
    InvalidSexLabelError,
)
from funnorm.io.annotation import SEX_SPECIFIC_SUBSETS, applicable_probe_subsets
from funnorm.utils.logger import logger

__all__ = [
    "DesignStrategy",
    "coerce_objects",
    "impute_matrix",
    "control_matrix",
    "design_matrix",
    "normalize_quantiles",
    "normalize_objects",
]

QUANTILE_TAIL_INCREMENT = 1000


def coerce_objects(
    objects: Sequence[Union[NormalizationObject, Mapping[str, Any]]],
) -> List[NormalizationObject]:
    """
    Validate a list of normalization objects.

    Mappings (as produced by :meth:`NormalizationObject.to_dict`) are rebuilt
    and validated.

    Raises
    ------
    InvalidObjectError
        If any element is not a valid normalization object.
    """
    out = []
    for i, obj in enumerate(objects):
        if isinstance(obj, NormalizationObject):
            out.append(obj)
        elif isinstance(obj, Mapping):
            out.append(NormalizationObject.from_dict(obj))
        else:
            raise InvalidObjectError(
                f"Element {i} is a {type(obj).__name__}, not a normalization object"
            )
    return out


def impute_matrix(x: np.ndarray) -> np.ndarray:
    """
    Replace missing values by the mean of their row.

    Rows with no observed value take the mean of the row means.
    """
    x = np.array(x, dtype=float, copy=True)
    missing = np.isnan(x)
    if not missing.any():
        return x
    counts = (~missing).sum(axis=1)
    sums = np.where(missing, 0.0, x).sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        row_means = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
    if np.isnan(row_means).any():
        observed = row_means[~np.isnan(row_means)]
        fallback = observed.mean() if observed.size else np.nan
        row_means = np.where(np.isnan(row_means), fallback, row_means)
    rows, _ = np.nonzero(missing)
    x[missing] = row_means[rows]
    return x


def _standardize_rows(x: np.ndarray) -> np.ndarray:
    mean = x.mean(axis=1, keepdims=True)
    sd = x.std(axis=1, ddof=1, keepdims=True)
    with np.errstate(invalid="ignore", divide="ignore"):
        return (x - mean) / sd


def control_matrix(objects: Sequence[NormalizationObject]) -> pd.DataFrame:
    """
    Controls x samples matrix of standardized control summaries.

    Missing entries are imputed; each control is standardized across samples,
    clipped to [-3, 3] and standardized again. Controls with no variation
    become zero.
    """
    objects = coerce_objects(objects)
    frame = pd.concat(
        [obj.controls.rename(i) for i, obj in enumerate(objects)], axis=1, sort=False
    )
    x = impute_matrix(frame.to_numpy(dtype=float))
    z = np.clip(_standardize_rows(x), -3, 3)
    z = _standardize_rows(z)
    z = np.nan_to_num(z, nan=0.0, posinf=0.0, neginf=0.0)
    return pd.DataFrame(z, index=frame.index, columns=[obj.name for obj in objects])


def design_matrix(objects: Sequence[NormalizationObject], number_pcs: int = 2) -> np.ndarray:
    """
    Samples x ``number_pcs`` matrix of control-matrix principal component scores.

    When fewer components exist than requested, ``number_pcs`` is reduced
    with a warning.
    """
    if number_pcs < 1:
        raise ConfigurationError(f"number_pcs must be >= 1, got {number_pcs}")
    cm = control_matrix(objects)
    samples_by_controls = cm.to_numpy().T
    available = min(samples_by_controls.shape)
    k = number_pcs
    if k > available:
        logger.warning(
            f"number_pcs={number_pcs} exceeds the {available} available components; "
            f"using {available}"
        )
        k = available
    if k == 0:
        return np.zeros((samples_by_controls.shape[0], 1))
    if not np.any(samples_by_controls):
        return np.zeros((samples_by_controls.shape[0], k))
    return PCA(n_components=k, svd_solver="full").fit_transform(samples_by_controls)


def normalize_quantiles(quantiles: np.ndarray, design: np.ndarray) -> np.ndarray:
    """
    Remove design-explained variation from quantile functions.

    Parameters
    ----------
    quantiles : ndarray
        Quantile points x samples.
    design : ndarray
        Samples x covariates design matrix (no intercept).

    Returns
    -------
    ndarray
        Corrected quantiles: the row means plus the residuals of a least
        squares fit of the centered quantiles on the design. The first row is
        anchored at 0 and the last row set to the penultimate row plus 1000
        before fitting.
    """
    q = np.array(quantiles, dtype=float, copy=True)
    design = np.asarray(design, dtype=float)
    if q.ndim != 2 or design.ndim != 2:
        raise ValueError("quantiles and design must be 2-dimensional")
    if q.shape[1] != design.shape[0]:
        raise ValueError(
            f"quantiles have {q.shape[1]} samples but design has {design.shape[0]} rows"
        )
    if q.shape[0] < 2:
        raise ValueError("at least two quantile points are required")

    q[0, :] = 0
    q[-1, :] = q[-2, :] + QUANTILE_TAIL_INCREMENT
    mean = q.mean(axis=1, keepdims=True)
    centered = q - mean

    if not np.isfinite(centered).all():
        logger.warning("Quantiles contain missing values; skipping regression")
        return q

    # (X'X)^+ X' Y
    coef = np.linalg.pinv(design.T @ design) @ design.T @ centered.T
    residuals = centered.T - design @ coef
    return mean + residuals.T


def _resolve_sex(
    objects: List[NormalizationObject],
    predicted: np.ndarray,
    sex: Optional[Sequence[Optional[str]]],
) -> List[str]:
    if sex is not None and len(sex) != len(objects):
        raise InvalidSexLabelError(
            f"{len(sex)} sex labels supplied for {len(objects)} samples"
        )
    resolved = []
    for i, obj in enumerate(objects):
        label = validate_sex_label(sex[i]) if sex is not None else None
        if label is None:
            label = validate_sex_label(obj.sex)
        resolved.append(label if label is not None else str(predicted[i]))
    return resolved


def normalize_objects(
    objects: Sequence[Union[NormalizationObject, Mapping[str, Any]]],
    number_pcs: int = 2,
    sex_cutoff: float = -2,
    sex: Optional[Sequence[Optional[str]]] = None,
) -> List[NormalizationObject]:
    """
    Batch-correct the quantiles of a set of normalization objects.

    Steps: choose the dye-bias reference (the sample whose red/green
    intensity ratio is closest to 1), resolve each sample's sex (override,
    then declared, then predicted), build a pooled design matrix and, when
    both sexes have more than one sample, one per sex; correct every subset's
    quantiles, within sex for sex-specific subsets when stratified; attach to
    each object the subsets applicable to its sex.

    Parameters
    ----------
    objects : list of NormalizationObject
        Objects from :func:`compute_normalization_object` (or their dicts).
    number_pcs : int, default 2
        Principal components used as covariates.
    sex_cutoff : float, default -2
        Sex prediction threshold on ``y_signal - x_signal``.
    sex : list, optional
        Per-sample sex overrides ("M", "F" or None).

    Returns
    -------
    list of NormalizationObject
        New objects; the inputs are not modified.

    Raises
    ------
    InsufficientSamplesError
        Fewer than two objects.
    InvalidObjectError
        An object is invalid or lacks channel intensities.
    InvalidSexLabelError
        A sex override is invalid or the override list has the wrong length.
    ConfigurationError
        ``number_pcs`` below 1.
    """
    if len(objects) < 2:
        raise InsufficientSamplesError(
            f"Batch correction needs at least 2 samples, got {len(objects)}"
        )
    objects = coerce_objects(objects)
    for obj in objects:
        if obj.intensity_R is None or obj.intensity_G is None:
            raise InvalidObjectError(f"Object {obj.basename!r} lacks channel intensities")
    if number_pcs < 1:
        raise ConfigurationError(f"number_pcs must be >= 1, got {number_pcs}")

    logger.info(
        f"Normalizing {len(objects)} objects (number_pcs={number_pcs}, "
        f"sex_cutoff={sex_cutoff})"
    )

    intensity_r = np.array([obj.intensity_R for obj in objects], dtype=float)
    intensity_g = np.array([obj.intensity_G for obj in objects], dtype=float)
    reference_idx = int(np.nanargmin(np.abs(intensity_r / intensity_g - 1)))
    reference_intensity = float((intensity_r + intensity_g)[reference_idx] / 2)
    logger.info(
        f"Dye-bias reference: {objects[reference_idx].name} "
        f"(intensity {reference_intensity:.1f})"
    )

    x_signal = np.array([obj.x_signal for obj in objects], dtype=float)
    y_signal = np.array([obj.y_signal for obj in objects], dtype=float)
    xy_diff = y_signal - x_signal
    predicted = np.atleast_1d(predict_sex(x_signal, y_signal, sex_cutoff))
    resolved = _resolve_sex(objects, predicted, sex)

    counts = Counter(resolved)
    has_both_sexes = len(counts) >= 2 and min(counts.values()) > 1
    strategy = (
        DesignStrategy.STRATIFIED_BY_SEX if has_both_sexes else DesignStrategy.POOLED
    )
    logger.info(f"Sex counts {dict(counts)}; design strategy: {strategy.value}")

    male_idx = [i for i, s in enumerate(resolved) if s == "M"]
    female_idx = [i for i, s in enumerate(resolved) if s == "F"]

    design = design_matrix(objects, number_pcs)
    if has_both_sexes:
        design_male = design_matrix([objects[i] for i in male_idx], number_pcs)
        design_female = design_matrix([objects[i] for i in female_idx], number_pcs)

    subset_names = list(objects[0].quantiles)
    normalized: Dict[str, Dict[str, np.ndarray]] = {}
    logger.progress("Normalizing quantiles", total=len(subset_names))
    for name in subset_names:
        normalized[name] = {}
        for target in ("M", "U"):
            try:
                original = np.column_stack(
                    [
                        np.asarray(obj.quantiles[name][target], dtype=float)
                        * reference_intensity
                        / obj.dye_intensity
                        for obj in objects
                    ]
                )
            except (KeyError, ValueError) as e:
                raise InvalidObjectError(
                    f"Quantiles of subset {name!r}/{target} are inconsistent: {e}"
                ) from e

            if has_both_sexes and name in SEX_SPECIFIC_SUBSETS:
                norm = original.copy()
                norm[:, male_idx] = normalize_quantiles(original[:, male_idx], design_male)
                norm[:, female_idx] = normalize_quantiles(
                    original[:, female_idx], design_female
                )
            else:
                norm = normalize_quantiles(original, design)
            normalized[name][target] = norm
        logger.progress_update(1)

    out = []
    for i, obj in enumerate(objects):
        applicable = applicable_probe_subsets(resolved[i], has_both_sexes)
        out.append(
            replace(
                obj,
                sex_cutoff=float(sex_cutoff),
                xy_diff=float(xy_diff[i]),
                predicted_sex=str(predicted[i]),
                sex=resolved[i],
                reference_intensity=reference_intensity,
                norm={
                    name: {t: normalized[name][t][:, i].copy() for t in ("M", "U")}
                    for name in applicable
                    if name in normalized
                },
                design_strategy=strategy,
            )
        )
    logger.info("Quantile normalization complete")
    return out
