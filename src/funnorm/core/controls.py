#!/usr/bin/env python
# coding: utf-8


"""
Control-probe summaries and probe-level quality control.

All statistics here are computed from raw (uncorrected) intensities.

Key Components
--------------
- ``extract_controls()`` – fixed, ordered summary vector of the technical
  control probes used to build the batch design matrix
- ``extract_detection_pvalues()`` / ``identify_bad_probes_detectionp()`` –
  one-sided tail probability of each CpG's total signal under the negative
  control background
- ``identify_bad_probes_beadnum()`` – CpGs measured by too few beads
- ``get_snp_betas()`` – methylation proportions of genotyping probes
"""


from typing import Dict, Iterable, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.robust.scale import mad

from funnorm.core.signal import rg_to_mu
from funnorm.io.annotation import ProbeAnnotation
from funnorm.io.data_utils import RGSet
from funnorm.utils.logger import logger


def _mean(x: np.ndarray) -> float:
    x = np.asarray(x, dtype=float)
    x = x[~np.isnan(x)]
    return float(x.mean()) if x.size else np.nan


def _values(
    means: Dict[str, pd.Series],
    annotation: ProbeAnnotation,
    dye: str,
    target: str,
    ext: Optional[Iterable[str]] = None,
) -> np.ndarray:
    rows = annotation.rows(dye=dye, targets=(target,))
    if ext is not None:
        rows = rows[rows["ext"].isin(list(ext))]
    addresses = pd.unique(rows["address"].to_numpy())
    return means[dye].reindex(pd.Index(addresses)).to_numpy(dtype=float)


def _flatten(name: str, values: Sequence[float]) -> Dict[str, float]:
    values = list(values)
    if len(values) == 1:
        return {name: float(values[0])}
    return {f"{name}{i + 1}": float(v) for i, v in enumerate(values)}


def extract_controls(rg: RGSet, annotation: ProbeAnnotation) -> pd.Series:
    """
    Summarize the technical control probes of one sample.

    The vector contains, in order: bisulfite1, bisulfite2, extension.G*,
    extension.R*, hybe*, stain.G*, stain.R*, nonpoly.G*, nonpoly.R*,
    targetrem*, spec1.G*, spec1.R*, spec2.G*, spec2.R*, spec1.ratio1,
    spec1.ratio, spec2.ratio, spec1.ratio2, normA, normC, normT, normG,
    dye.bias, oob.G quantiles (1%, 50%, 99%) and oob.ratio. Groups marked
    ``*`` hold one entry per control probe, numbered from 1. Summaries of
    absent control groups are NaN.

    Parameters
    ----------
    rg : RGSet
        Raw sample signal.
    annotation : ProbeAnnotation
        Probe annotation of the sample's array.

    Returns
    -------
    pd.Series
        Control summary vector indexed by summary name.
    """
    means = rg.means()

    def v(dye, target, ext=None):
        return _values(means, annotation, dye, target, ext)

    bisulfite2 = _mean(v("R", "BISULFITE CONVERSION II"))

    bisulfite1_g = v(
        "G",
        "BISULFITE CONVERSION I",
        [f"BS Conversion I{sep}C{i}" for sep, i in zip((" ", "-", "-"), (1, 2, 3))],
    )
    bisulfite1_r = v(
        "R", "BISULFITE CONVERSION I", [f"BS Conversion I-C{i}" for i in (4, 5, 6)]
    )
    if len(bisulfite1_g) == len(bisulfite1_r):
        bisulfite1 = _mean(bisulfite1_g + bisulfite1_r)
    else:
        bisulfite1 = np.nan

    stain_g = v("G", "STAINING", ["Biotin (High)"])
    stain_r = v("R", "STAINING", ["DNP (High)"])

    extension_r = v("R", "EXTENSION", ["Extension (A)", "Extension (T)"])
    extension_g = v("G", "EXTENSION", ["Extension (C)", "Extension (G)"])

    hybe = v("G", "HYBRIDIZATION")
    targetrem = v("G", "TARGET REMOVAL")

    nonpoly_r = v("R", "NON-POLYMORPHIC", ["NP (A)", "NP (T)"])
    nonpoly_g = v("G", "NON-POLYMORPHIC", ["NP (C)", "NP (G)"])

    spec2_g = v("G", "SPECIFICITY II")
    spec2_r = v("R", "SPECIFICITY II")
    spec2_ratio = _mean(spec2_g) / _mean(spec2_r)

    ext = [f"GT Mismatch {i} (PM)" for i in (1, 2, 3)]
    spec1_g = v("G", "SPECIFICITY I", ext)
    spec1_rp = v("R", "SPECIFICITY I", ext)
    spec1_ratio1 = _mean(spec1_rp) / _mean(spec1_g)

    ext = [f"GT Mismatch {i} (PM)" for i in (4, 5, 6)]
    spec1_gp = v("G", "SPECIFICITY I", ext)
    spec1_r = v("R", "SPECIFICITY I", ext)
    spec1_ratio2 = _mean(spec1_gp) / _mean(spec1_r)

    spec1_ratio = (spec1_ratio1 + spec1_ratio2) / 2

    norm_a = _mean(v("R", "NORM_A"))
    norm_t = _mean(v("R", "NORM_T"))
    norm_c = _mean(v("G", "NORM_C"))
    norm_g = _mean(v("G", "NORM_G"))

    dye_bias = (norm_c + norm_g) / (norm_a + norm_t)

    probs = [0.01, 0.5, 0.99]
    oob_g = _quantiles(v("G", "OOB"), probs)
    oob_r = _quantiles(v("R", "OOB"), probs)
    oob_ratio = oob_g[1] / oob_r[1]

    summary: Dict[str, float] = {"bisulfite1": bisulfite1, "bisulfite2": bisulfite2}
    for name, values in (
        ("extension.G", extension_g),
        ("extension.R", extension_r),
        ("hybe", hybe),
        ("stain.G", stain_g),
        ("stain.R", stain_r),
        ("nonpoly.G", nonpoly_g),
        ("nonpoly.R", nonpoly_r),
        ("targetrem", targetrem),
        ("spec1.G", spec1_g),
        ("spec1.R", spec1_r),
        ("spec2.G", spec2_g),
        ("spec2.R", spec2_r),
    ):
        summary.update(_flatten(name, values))
    summary.update(
        {
            "spec1.ratio1": spec1_ratio1,
            "spec1.ratio": spec1_ratio,
            "spec2.ratio": spec2_ratio,
            "spec1.ratio2": spec1_ratio2,
            "normA": norm_a,
            "normC": norm_c,
            "normT": norm_t,
            "normG": norm_g,
            "dye.bias": dye_bias,
        }
    )
    for p, q in zip(("1%", "50%", "99%"), oob_g):
        summary[f"oob.G.{p}"] = q
    summary["oob.ratio"] = oob_ratio

    controls = pd.Series(summary, dtype=float)
    n_missing = int(controls.isna().sum())
    if n_missing:
        logger.debug(f"{n_missing} control summaries are missing for {rg.basename}")
    return controls


def _quantiles(x: np.ndarray, probs: Sequence[float]) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    x = x[~np.isnan(x)]
    if x.size == 0:
        return np.full(len(probs), np.nan)
    return np.quantile(x, probs)


def _site_lookup(
    rg: RGSet, annotation: ProbeAnnotation, target: str, column: str, sites: pd.Index
) -> pd.DataFrame:
    """Per-site value of ``column`` at the ``target`` address, with the site's dye."""
    rows = (
        annotation.rows(targets=(target,))
        .drop_duplicates("name")
        .set_index("name")
        .reindex(sites)
    )
    values = np.full(len(rows), np.nan)
    dyes = rows["dye"].to_numpy()
    for dye in ("R", "G"):
        idx = dyes == dye
        if idx.any():
            addresses = rows["address"].to_numpy()[idx].astype("int64")
            values[idx] = (
                rg.channel(dye)[column].astype(float).reindex(addresses).to_numpy()
            )
    return pd.DataFrame({"value": values, "dye": dyes}, index=sites)


def extract_detection_pvalues(rg: RGSet, annotation: ProbeAnnotation) -> pd.Series:
    """
    Detection p-value of every CpG probe.

    The background of each channel is the median and normal-consistent MAD of
    its negative control intensities. A probe's p-value is the upper tail
    probability of ``M + U`` under a normal with mean ``med_M + med_U`` and
    standard deviation ``sd_M + sd_U``, each term taken from the channel the
    role is read on.
    """
    med, sd = {}, {}
    for dye in ("R", "G"):
        neg = _values(rg.means(), annotation, dye, "NEGATIVE")
        neg = neg[~np.isnan(neg)]
        med[dye] = float(np.median(neg)) if neg.size else np.nan
        sd[dye] = float(mad(neg)) if neg.size else np.nan

    sites = pd.Index(annotation.probe_names)
    m = _site_lookup(rg, annotation, "M", "Mean", sites)
    u = _site_lookup(rg, annotation, "U", "Mean", sites)

    def per_site(stat, frame):
        return frame["dye"].map(stat).to_numpy(dtype=float)

    pvalues = norm.sf(
        m["value"].to_numpy() + u["value"].to_numpy(),
        loc=per_site(med, m) + per_site(med, u),
        scale=per_site(sd, m) + per_site(sd, u),
    )
    return pd.Series(pvalues, index=sites, name="detection_p")


def identify_bad_probes_detectionp(
    rg: RGSet, annotation: ProbeAnnotation, threshold: float = 0.01
) -> pd.Series:
    """Detection p-values above ``threshold``."""
    pvalues = extract_detection_pvalues(rg, annotation)
    bad = pvalues[pvalues > threshold]
    logger.debug(f"{len(bad)} probes fail detection p-value threshold {threshold}")
    return bad


def identify_bad_probes_beadnum(
    rg: RGSet, annotation: ProbeAnnotation, threshold: int = 3
) -> pd.Series:
    """
    Bead counts below ``threshold``.

    A probe's bead count is the smaller of the counts at its methylated and
    unmethylated addresses.
    """
    sites = pd.Index(annotation.probe_names)
    m = _site_lookup(rg, annotation, "M", "NBeads", sites)["value"].to_numpy()
    u = _site_lookup(rg, annotation, "U", "NBeads", sites)["value"].to_numpy()
    n_beads = pd.Series(np.minimum(m, u), index=sites, name="n_beads")
    bad = n_beads[n_beads < threshold]
    logger.debug(f"{len(bad)} probes have fewer than {threshold} beads")
    return bad


def get_snp_betas(rg: RGSet, annotation: ProbeAnnotation) -> pd.Series:
    """Raw methylation proportions of the genotyping (``MG``/``UG``) probes."""
    if not annotation.table["target"].isin(["MG", "UG"]).any():
        return pd.Series(dtype=float, name="snp_beta")
    mu = rg_to_mu(rg, annotation, targets=("MG", "UG"))
    return (mu.M / (mu.M + mu.U + 100)).rename("snp_beta")
