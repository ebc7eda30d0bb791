#!/usr/bin/env python
# coding: utf-8


"""
Signal extraction for two-channel methylation arrays.

Converts raw per-address red/green intensities into methylated and
unmethylated probe signal:

1. Background correction with a normal-exponential convolution model whose
   background parameters are estimated robustly from out-of-band intensities.
2. Dye-bias correction rescaling each channel so the mean of its
   normalization control probes equals a reference intensity.
3. Channel-to-signal mapping of every CpG probe to its methylated and
   unmethylated addresses.

Features
--------
- Huber M-estimate of location with fixed MAD scale (``huber``)
- Normal-exponential signal expectation (``normexp_signal``)
- ``extract_signal()`` running the full chain for one sample
- ``get_beta()`` methylation proportion ``M / (M + U + pseudo)``
"""


from typing import Dict, Iterable, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.robust.scale import mad

from funnorm.io.annotation import ProbeAnnotation
from funnorm.io.data_utils import MU, RGSet
from funnorm.io.readers import ChannelReader, read_idat, read_rg
from funnorm.utils.logger import logger

__all__ = [
    "RGSet",
    "MU",
    "huber",
    "normexp_signal",
    "background_correct",
    "calculate_intensity",
    "dye_bias_correct",
    "rg_to_mu",
    "correct_rg",
    "extract_signal",
    "get_beta",
]

Signal = Dict[str, pd.Series]

NORM_TARGETS = {"R": ("NORM_A", "NORM_T"), "G": ("NORM_C", "NORM_G")}


def huber(y: np.ndarray, k: float = 1.5, tol: float = 1e-6) -> Tuple[float, float]:
    """
    Huber M-estimator of location with MAD scale held fixed.

    Parameters
    ----------
    y : array-like
        Observations; NaNs are dropped.
    k : float, default 1.5
        Winsorizing constant in units of the scale.
    tol : float, default 1e-6
        Convergence tolerance relative to the scale.

    Returns
    -------
    (mu, s) : tuple of float
        Location estimate and normal-consistent MAD.

    Raises
    ------
    ValueError
        If the MAD of ``y`` is zero.
    """
    y = np.asarray(y, dtype=float)
    y = y[~np.isnan(y)]
    if y.size == 0:
        raise ValueError("cannot estimate location of an empty sample")
    mu = float(np.median(y))
    s = float(mad(y))
    if s == 0:
        raise ValueError("cannot estimate scale: MAD is zero for this sample")
    while True:
        mu1 = float(np.clip(y, mu - k * s, mu + k * s).mean())
        if abs(mu - mu1) < tol * s:
            break
        mu = mu1
    return mu, s


def normexp_signal(
    mu: float, sigma: float, alpha: float, x: np.ndarray
) -> np.ndarray:
    """
    Expected signal given observed intensity under the normal-exponential model.

    Observed intensity is modelled as exponential signal (mean ``alpha``)
    plus normal background (mean ``mu``, sd ``sigma``). Results are bounded
    below by 1e-6.
    """
    if alpha <= 0:
        raise ValueError("alpha must be positive")
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    x = np.asarray(x, dtype=float)
    sigma2 = sigma * sigma
    mu_sf = x - mu - sigma2 / alpha
    signal = mu_sf + sigma2 * np.exp(
        norm.logpdf(0, loc=mu_sf, scale=sigma) - norm.logsf(0, loc=mu_sf, scale=sigma)
    )
    if np.nanmin(signal, initial=np.inf) < 0:
        logger.debug("Limit of numerical accuracy reached with very low intensity")
        signal = np.where(np.isnan(signal), signal, np.maximum(signal, 1e-6))
    return signal


def _channel_values(rg: RGSet, dye: str, addresses: Iterable) -> pd.Series:
    return rg.channel(dye)["Mean"].astype(float).reindex(pd.Index(addresses))


def background_correct(
    rg: RGSet, annotation: ProbeAnnotation, offset: float = 15
) -> Signal:
    """
    Background-correct both channels of a sample.

    For each channel the background location and scale are the Huber
    estimates of the out-of-band intensities; the signal mean is the excess of
    the Huber location of the signal probes over the background (at least 10).
    Signal and control probe intensities, floored at 1, are replaced by their
    expected signal plus ``offset``.

    Returns
    -------
    dict
        ``{"R": Series, "G": Series}`` of corrected intensities indexed by
        address, covering signal and control addresses only.
    """
    corrected = {}
    for dye in ("R", "G"):
        xf = _channel_values(rg, dye, annotation.addresses(dye, targets=("M", "U")))
        xf[xf <= 0] = 1
        xc = _channel_values(rg, dye, annotation.addresses(dye, types=("control",)))
        xc[xc <= 0] = 1
        oob = _channel_values(rg, dye, annotation.addresses(dye, targets=("OOB",)))

        mu, sigma = huber(oob.to_numpy())
        alpha = max(huber(xf.to_numpy())[0] - mu, 10.0)
        logger.debug(
            f"Background {dye}: mu={mu:.2f}, sigma={sigma:.2f}, alpha={alpha:.2f}"
        )

        x = pd.concat([xf, xc])
        x = x[~x.index.duplicated()]
        corrected[dye] = pd.Series(
            normexp_signal(mu, sigma, alpha, x.to_numpy()) + offset, index=x.index
        )
    return corrected


def _as_signal(data: Union[RGSet, Signal]) -> Signal:
    return data.means() if isinstance(data, RGSet) else data


def calculate_intensity(
    signal: Union[RGSet, Signal], annotation: ProbeAnnotation, dye: str
) -> float:
    """Mean intensity of the normalization control probes of channel ``dye``."""
    signal = _as_signal(signal)
    addresses = annotation.addresses(dye, targets=NORM_TARGETS[dye])
    return float(signal[dye].reindex(pd.Index(addresses)).mean(skipna=True))


def dye_bias_correct(
    signal: Union[RGSet, Signal], annotation: ProbeAnnotation, intensity: float = 5000
) -> Signal:
    """Rescale each channel so its normalization-control mean equals ``intensity``."""
    signal = _as_signal(signal)
    return {
        dye: signal[dye] * (intensity / calculate_intensity(signal, annotation, dye))
        for dye in ("R", "G")
    }


def rg_to_mu(
    signal: Union[RGSet, Signal],
    annotation: ProbeAnnotation,
    targets: Tuple[str, str] = ("M", "U"),
) -> MU:
    """
    Map channel signal to methylated/unmethylated signal by probe name.

    Parameters
    ----------
    signal : RGSet or dict
        Raw sample signal or corrected ``{"R", "G"}`` intensities by address.
    annotation : ProbeAnnotation
        Probe annotation.
    targets : tuple of str, default ("M", "U")
        Roles read as methylated and unmethylated (``("MG", "UG")`` for
        genotyping probes).

    Returns
    -------
    MU
        Signals indexed by the probe names of the methylated role.
    """
    signal = _as_signal(signal)

    def collect(target: str) -> pd.Series:
        parts = []
        for dye in ("R", "G"):
            rows = annotation.rows(dye=dye, targets=(target,))
            values = signal[dye].reindex(pd.Index(rows["address"].to_numpy()))
            parts.append(pd.Series(values.to_numpy(), index=rows["name"].to_numpy()))
        out = pd.concat(parts)
        return out[~out.index.duplicated()]

    return MU(M=collect(targets[0]), U=collect(targets[1]))


def correct_rg(
    rg: RGSet, annotation: ProbeAnnotation, intensity: float = 5000
) -> Tuple[MU, float, float]:
    """
    Background- and dye-bias-correct a sample and map it to M/U signal.

    Returns
    -------
    (mu, intensity_R, intensity_G)
        Corrected signal and the channel intensities measured after background
        correction but before dye-bias correction.
    """
    signal = background_correct(rg, annotation)
    intensity_r = calculate_intensity(signal, annotation, "R")
    intensity_g = calculate_intensity(signal, annotation, "G")
    signal = dye_bias_correct(signal, annotation, intensity)
    return rg_to_mu(signal, annotation), intensity_r, intensity_g


def extract_signal(
    basename: str,
    annotation: ProbeAnnotation,
    intensity: float = 5000,
    reader: ChannelReader = read_idat,
) -> MU:
    """
    Read a sample and return its corrected methylated/unmethylated signal.

    Parameters
    ----------
    basename : str
        Sample basename.
    annotation : ProbeAnnotation
        Probe annotation of the sample's array.
    intensity : float, default 5000
        Reference intensity for dye-bias correction.
    reader : callable, default read_idat
        Channel reader.

    Raises
    ------
    MissingFileError
        If either channel file is absent.
    """
    rg = read_rg(basename, annotation, reader=reader)
    mu, _, _ = correct_rg(rg, annotation, intensity)
    return mu


def get_beta(
    mu: Union[MU, pd.Series, pd.DataFrame, np.ndarray],
    U: Optional[Union[pd.Series, pd.DataFrame, np.ndarray]] = None,
    pseudo: float = 100,
):
    """
    Methylation proportion ``M / (M + U + pseudo)``.

    Parameters
    ----------
    mu : MU or array-like
        An :class:`MU` pair, or the methylated signal when ``U`` is given.
    U : array-like, optional
        Unmethylated signal.
    pseudo : float, default 100
        Positive stabilizer added to the denominator.
    """
    if pseudo <= 0:
        raise ValueError("pseudo must be positive")
    if isinstance(mu, MU):
        M, U = mu.M, mu.U
    else:
        if U is None:
            raise ValueError("U is required when M is not an MU pair")
        M = mu
    return M / (M + U + pseudo)
