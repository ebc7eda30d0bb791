#!/usr/bin/env python
# coding: utf-8


"""
Per-sample normalization objects.

A :class:`NormalizationObject` summarizes one sample just enough for the
cross-sample batch correction: its control-probe summary vector, channel
intensities, sex-chromosome signal and the quantiles of its methylated and
unmethylated signal in each probe subset. It never holds per-probe signal.

Objects are immutable. The batch corrector returns new objects carrying the
reference intensity, the batch-corrected quantiles (``norm``) and the design
strategy that produced them.

Key Components
--------------
- :class:`NormalizationObject` – validated value type with dict round-tripping
- :class:`DesignStrategy` – pooled or sex-stratified design matrices
- ``predict_sex()`` – threshold on the Y minus X signal difference
- ``compute_normalization_object()`` – build the object of one sample
- ``compute_normalization_objects()`` – build many through the bounded map
"""


from dataclasses import dataclass, field, fields
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from funnorm.core.controls import (
    extract_controls,
    get_snp_betas,
    identify_bad_probes_beadnum,
    identify_bad_probes_detectionp,
)
from funnorm.core.parallel import DEFAULT_MAX_BYTES, bounded_map
from funnorm.core.signal import correct_rg
from funnorm.errors import ConfigurationError, InvalidObjectError, InvalidSexLabelError
from funnorm.io.annotation import ProbeAnnotation
from funnorm.io.data_utils import MU
from funnorm.io.readers import ChannelReader, read_idat, read_rg
from funnorm.utils.logger import logger

ORIGIN = "funnorm.compute_normalization_object"
OBJECT_VERSION = 1

REQUIRED_FIELDS = (
    "basename",
    "controls",
    "quantiles",
    "dye_intensity",
    "x_signal",
    "y_signal",
)

Quantiles = Dict[str, Dict[str, np.ndarray]]


class DesignStrategy(str, Enum):
    """How design matrices were built for the batch correction."""

    POOLED = "pooled"
    STRATIFIED_BY_SEX = "stratified_by_sex"


@dataclass(frozen=True, eq=False)
class NormalizationObject:
    """
    Summary of one sample used by the cross-sample batch correction.

    Parameters
    ----------
    basename : str
        Sample basename the raw signal is read from.
    controls : pd.Series
        Control-probe summary vector.
    quantiles : dict
        ``{subset: {"M": array, "U": array}}`` signal quantiles.
    dye_intensity : float
        Reference intensity used for dye-bias correction when building.
    x_signal, y_signal : float
        Median log2 total signal of chrX and chrY probes.

    Notes
    -----
    ``reference_intensity``, ``norm`` and ``design_strategy`` are ``None``
    until the object has passed through the batch correction.
    """

    basename: str
    controls: pd.Series
    quantiles: Quantiles
    dye_intensity: float
    x_signal: float
    y_signal: float
    sample_name: Optional[str] = None
    array_id: Optional[str] = None
    number_quantiles: Optional[int] = None
    intensity_R: Optional[float] = None
    intensity_G: Optional[float] = None
    xy_diff: Optional[float] = None
    predicted_sex: Optional[str] = None
    sex: Optional[str] = None
    sex_cutoff: float = -2.0
    median_m_signal: Optional[float] = None
    median_u_signal: Optional[float] = None
    bad_probes_detectionp: Optional[pd.Series] = None
    bad_probes_beadnum: Optional[pd.Series] = None
    thresholds: Dict[str, float] = field(default_factory=dict)
    snp_betas: Optional[pd.Series] = None
    reference_intensity: Optional[float] = None
    norm: Optional[Quantiles] = None
    design_strategy: Optional[DesignStrategy] = None
    origin: str = ORIGIN
    version: int = OBJECT_VERSION

    def __post_init__(self) -> None:
        missing = [name for name in REQUIRED_FIELDS if getattr(self, name) is None]
        if missing:
            raise InvalidObjectError(
                f"Normalization object {self.basename!r} is missing: {missing}"
            )
        if self.origin != ORIGIN:
            raise InvalidObjectError(
                f"Object {self.basename!r} was not built by {ORIGIN} "
                f"(origin={self.origin!r})"
            )
        if self.version != OBJECT_VERSION:
            raise InvalidObjectError(
                f"Object {self.basename!r} has version {self.version}; "
                f"expected {OBJECT_VERSION}"
            )

    @property
    def name(self) -> str:
        return self.sample_name or Path(self.basename).name

    @property
    def is_normalized(self) -> bool:
        return self.norm is not None and self.reference_intensity is not None

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary of all fields (shallow copies of the containers)."""
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if self.design_strategy is not None:
            out["design_strategy"] = self.design_strategy.value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NormalizationObject":
        """
        Rebuild an object from :meth:`to_dict` output.

        Raises
        ------
        InvalidObjectError
            If a required field is absent, a field is unknown, or the origin
            or version tags do not match.
        """
        missing = [name for name in REQUIRED_FIELDS if data.get(name) is None]
        if missing:
            raise InvalidObjectError(
                f"Normalization object {data.get('basename')!r} is missing: {missing}"
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidObjectError(f"Unknown normalization object fields: {unknown}")
        kwargs = dict(data)
        if kwargs.get("design_strategy") is not None:
            kwargs["design_strategy"] = DesignStrategy(kwargs["design_strategy"])
        if not isinstance(kwargs["controls"], pd.Series):
            kwargs["controls"] = pd.Series(kwargs["controls"], dtype=float)
        return cls(**kwargs)


def validate_sex_label(sex: Any) -> Optional[str]:
    """
    Normalize a declared sex label to ``"M"``, ``"F"`` or ``None``.

    Raises
    ------
    InvalidSexLabelError
        For anything other than a missing value, "NA", "M" or "F".
    """
    if sex is None:
        return None
    if isinstance(sex, float) and np.isnan(sex):
        return None
    if sex is pd.NA or sex == "NA":
        return None
    if sex in ("M", "F"):
        return sex
    raise InvalidSexLabelError(f"Invalid sex label {sex!r}; expected NA, 'M' or 'F'")


def predict_sex(x_signal, y_signal, cutoff: float = -2):
    """
    Predict sex from chrX/chrY signal.

    ``"F"`` when ``y_signal - x_signal < cutoff``, otherwise ``"M"``. Accepts
    scalars (returns a str) or arrays (returns an array of str).
    """
    diff = np.asarray(y_signal, dtype=float) - np.asarray(x_signal, dtype=float)
    out = np.where(diff < cutoff, "F", "M")
    return str(out) if out.ndim == 0 else out


def _chromosome_signal(mu: MU, annotation: ProbeAnnotation, chrom: str) -> float:
    names = pd.unique(annotation.table.loc[annotation.table["chr"] == chrom, "name"].dropna())
    total = (mu.M.reindex(names) + mu.U.reindex(names)).to_numpy(dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        logged = np.log2(total)
    # zero signal stays in the median as -inf; missing probes are dropped
    logged = logged[~np.isnan(logged)]
    return float(np.median(logged)) if logged.size else np.nan


def _signal_quantiles(values: np.ndarray, probs: np.ndarray) -> np.ndarray:
    values = values[~np.isnan(values)]
    if values.size == 0:
        return np.full(len(probs), np.nan)
    return np.quantile(values, probs)


def compute_normalization_object(
    basename: str,
    annotation: ProbeAnnotation,
    number_quantiles: int = 500,
    dye_intensity: float = 5000,
    detection_threshold: float = 0.01,
    bead_threshold: int = 3,
    sex_cutoff: float = -2,
    sex: Optional[str] = None,
    sample_name: Optional[str] = None,
    reader: ChannelReader = read_idat,
    min_annotation_rows: int = 100_000,
) -> NormalizationObject:
    """
    Summarize one sample for functional normalization.

    Reads the raw signal once, flags unreliable probes, extracts the control
    summary vector, background- and dye-bias-corrects the signal, measures
    chrX/chrY signal to predict sex and computes the quantiles of methylated
    and unmethylated signal in every probe subset.

    Parameters
    ----------
    basename : str
        Sample basename.
    annotation : ProbeAnnotation
        Probe annotation of the sample's array.
    number_quantiles : int, default 500
        Quantile points per subset (at least 100).
    dye_intensity : float, default 5000
        Reference intensity for dye-bias correction (at least 100).
    detection_threshold : float, default 0.01
        Detection p-value above which a probe is flagged.
    bead_threshold : int, default 3
        Bead count below which a probe is flagged.
    sex_cutoff : float, default -2
        Threshold on ``y_signal - x_signal`` below which a sample is female.
    sex : {"M", "F"} or None
        Declared sex.
    sample_name : str, optional
        Sample identifier (defaults to the final basename component).
    reader : callable, default read_idat
        Channel reader.
    min_annotation_rows : int, default 100000
        Smallest plausible annotation size.

    Returns
    -------
    NormalizationObject

    Raises
    ------
    ConfigurationError
        If ``number_quantiles`` or ``dye_intensity`` are below 100.
    InvalidSexLabelError
        If ``sex`` is not NA, "M" or "F".
    InvalidAnnotationError
        If the annotation is smaller than ``min_annotation_rows``.
    MissingFileError
        If a channel file is absent.
    """
    if number_quantiles < 100:
        raise ConfigurationError(f"number_quantiles must be >= 100, got {number_quantiles}")
    if dye_intensity < 100:
        raise ConfigurationError(f"dye_intensity must be >= 100, got {dye_intensity}")
    sex = validate_sex_label(sex)
    annotation.check_size(min_annotation_rows)

    logger.info(f"Computing normalization object for {basename}")
    rg = read_rg(basename, annotation, reader=reader)

    bad_detectionp = identify_bad_probes_detectionp(rg, annotation, detection_threshold)
    bad_beadnum = identify_bad_probes_beadnum(rg, annotation, bead_threshold)
    snp_betas = get_snp_betas(rg, annotation)
    controls = extract_controls(rg, annotation)

    mu, intensity_r, intensity_g = correct_rg(rg, annotation, dye_intensity)
    del rg

    x_signal = _chromosome_signal(mu, annotation, "chrX")
    y_signal = _chromosome_signal(mu, annotation, "chrY")
    xy_diff = y_signal - x_signal

    probs = np.linspace(0, 1, number_quantiles)
    quantiles = {
        name: {
            target: _signal_quantiles(
                mu[target].reindex(pd.Index(subset[target])).to_numpy(dtype=float),
                probs,
            )
            for target in ("M", "U")
        }
        for name, subset in annotation.quantile_probe_subsets.items()
    }

    return NormalizationObject(
        basename=str(basename),
        controls=controls,
        quantiles=quantiles,
        dye_intensity=float(dye_intensity),
        x_signal=x_signal,
        y_signal=y_signal,
        sample_name=sample_name or Path(str(basename)).name,
        array_id=annotation.array_id,
        number_quantiles=number_quantiles,
        intensity_R=intensity_r,
        intensity_G=intensity_g,
        xy_diff=xy_diff,
        predicted_sex=predict_sex(x_signal, y_signal, sex_cutoff),
        sex=sex,
        sex_cutoff=float(sex_cutoff),
        median_m_signal=float(np.nanmedian(mu.M.to_numpy())),
        median_u_signal=float(np.nanmedian(mu.U.to_numpy())),
        bad_probes_detectionp=bad_detectionp,
        bad_probes_beadnum=bad_beadnum,
        thresholds={"detection": detection_threshold, "beadnum": bead_threshold},
        snp_betas=snp_betas,
    )


def _object_bytes(annotation: ProbeAnnotation, number_quantiles: int) -> int:
    """Generous size estimate of one normalization object."""
    n_subsets = len(annotation.quantile_probe_subsets)
    n_probes = len(annotation.probe_names)
    return 8 * (2 * n_subsets * number_quantiles + 2 * n_probes) + 64 * 1024


def _build_item(item, **kwargs) -> NormalizationObject:
    basename, sex = item
    return compute_normalization_object(basename, sex=sex, **kwargs)


def compute_normalization_objects(
    basenames: Sequence[str],
    annotation: ProbeAnnotation,
    number_quantiles: int = 500,
    dye_intensity: float = 5000,
    detection_threshold: float = 0.01,
    bead_threshold: int = 3,
    sex_cutoff: float = -2,
    sex: Optional[Sequence[Optional[str]]] = None,
    reader: ChannelReader = read_idat,
    min_annotation_rows: int = 100_000,
    n_jobs: int = 1,
    max_bytes: int = DEFAULT_MAX_BYTES,
    tempdir: Optional[str] = None,
) -> List[NormalizationObject]:
    """
    Build the normalization objects of many samples in parallel.

    Options and validation are those of :func:`compute_normalization_object`;
    ``sex`` optionally declares one label per basename. Options are checked
    before any sample is read.

    Raises
    ------
    BoundedMapError
        If any sample fails; every failure is reported.
    """
    basenames = list(basenames)
    if sex is None:
        sex = [None] * len(basenames)
    if len(sex) != len(basenames):
        raise InvalidSexLabelError(
            f"{len(sex)} sex labels supplied for {len(basenames)} samples"
        )
    sex = [validate_sex_label(s) for s in sex]
    if number_quantiles < 100:
        raise ConfigurationError(f"number_quantiles must be >= 100, got {number_quantiles}")
    if dye_intensity < 100:
        raise ConfigurationError(f"dye_intensity must be >= 100, got {dye_intensity}")
    annotation.check_size(min_annotation_rows)

    logger.info(
        f"Computing {len(basenames)} normalization objects "
        f"(number_quantiles={number_quantiles}, dye_intensity={dye_intensity})"
    )
    fn = partial(
        _build_item,
        annotation=annotation,
        number_quantiles=number_quantiles,
        dye_intensity=dye_intensity,
        detection_threshold=detection_threshold,
        bead_threshold=bead_threshold,
        sex_cutoff=sex_cutoff,
        reader=reader,
        min_annotation_rows=min_annotation_rows,
    )
    return bounded_map(
        list(zip(basenames, sex)),
        fn,
        ret_bytes=_object_bytes(annotation, number_quantiles),
        max_bytes=max_bytes,
        n_jobs=n_jobs,
        tempdir=tempdir,
    )
