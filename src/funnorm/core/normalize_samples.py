#!/usr/bin/env python
# coding: utf-8


"""
Per-sample application of batch-corrected quantiles.

Each sample's signal is re-extracted with the dye-bias reference intensity
chosen by the batch correction. The signal of every probe subset the sample
carries is then remapped, rank for rank, onto a fine-grained target
distribution reconstructed from that subset's corrected quantiles. Probes
outside every carried subset keep their extracted signal.

Features
--------
- ``compute_quantiles_target()`` – piecewise-linear expansion of a quantile
  function
- ``quantile_normalize_to_target()`` – rank-preserving remapping with average
  ranks for ties
- ``normalize_sample()`` – normalized M/U signal of one sample
- ``normalize_samples()`` – probes x samples beta matrix (or M/U pair) built
  through the bounded parallel map, optionally streamed into an HDF5 store
"""


from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from funnorm.core.batch_correction import coerce_objects
from funnorm.core.normalization_object import NormalizationObject
from funnorm.core.parallel import (
    DEFAULT_MAX_BYTES,
    ItemFailure,
    bounded_map,
    bounded_map_to_store,
)
from funnorm.core.signal import extract_signal, get_beta
from funnorm.errors import InsufficientSamplesError, InvalidObjectError
from funnorm.io.annotation import ProbeAnnotation
from funnorm.io.data_utils import MU
from funnorm.io.readers import ChannelReader, read_idat
from funnorm.io.writers import HDF5MatrixStore
from funnorm.utils.logger import logger


def compute_quantiles_target(quantiles: np.ndarray) -> np.ndarray:
    """
    Expand ``n`` quantile points into a fine-grained target distribution.

    Each interval between consecutive points contributes ``n`` equally
    spaced values (start inclusive, end exclusive) and the last point is
    appended, giving ``n * (n - 1) + 1`` sorted values.
    """
    q = np.asarray(quantiles, dtype=float)
    n = len(q)
    if n < 2:
        return np.sort(q)
    steps = np.arange(n) / n
    target = q[:-1, None] + (q[1:] - q[:-1])[:, None] * steps[None, :]
    return np.sort(np.concatenate([target.ravel(), q[-1:]]))


def quantile_normalize_to_target(values: np.ndarray, target: np.ndarray) -> np.ndarray:
    """
    Replace values by the target quantiles of their ranks.

    The ``m`` finite values receive average ranks; rank ``r`` maps to the
    target interpolated at relative position ``(r - 1) / (m - 1)``. Missing
    values stay missing.
    """
    values = np.asarray(values, dtype=float)
    target = np.sort(np.asarray(target, dtype=float))
    out = np.full(values.shape, np.nan)
    ok = ~np.isnan(values)
    m = int(ok.sum())
    if m == 0 or target.size == 0:
        return out
    if m == 1:
        positions = np.array([0.5])
    else:
        positions = (rankdata(values[ok], method="average") - 1) / (m - 1)
    grid = np.linspace(0, 1, target.size)
    out[ok] = np.interp(positions, grid, target)
    return out


def normalize_sample(
    obj: NormalizationObject,
    annotation: ProbeAnnotation,
    reader: ChannelReader = read_idat,
) -> MU:
    """
    Normalized methylated/unmethylated signal of one sample.

    Parameters
    ----------
    obj : NormalizationObject
        Object returned by :func:`~funnorm.core.batch_correction.normalize_objects`.
    annotation : ProbeAnnotation
        Probe annotation of the sample's array.
    reader : callable, default read_idat
        Channel reader.

    Returns
    -------
    MU
        Non-negative signals for every CpG probe of the annotation.

    Raises
    ------
    InvalidObjectError
        If the object has not been batch-corrected.
    """
    if not obj.is_normalized:
        raise InvalidObjectError(f"Object {obj.basename!r} has not been normalized")

    mu = extract_signal(obj.basename, annotation, obj.reference_intensity, reader=reader)
    mu = mu.subset(annotation.probe_names)
    signal = {"M": mu.M.copy(), "U": mu.U.copy()}

    subsets = annotation.quantile_probe_subsets
    for name, targets in obj.norm.items():
        for target, quantiles in targets.items():
            idx = np.flatnonzero(signal[target].index.isin(subsets[name][target]))
            if idx.size == 0:
                continue
            original = signal[target].to_numpy()[idx]
            remapped = quantile_normalize_to_target(
                original, compute_quantiles_target(quantiles)
            )
            # corrected quantiles can dip below zero; signal cannot
            signal[target].iloc[idx] = np.clip(remapped, 0, None)
    logger.debug(f"Normalized {obj.name} over {len(obj.norm)} subsets")
    return MU(M=signal["M"], U=signal["U"])


def _normalized_column(
    obj: NormalizationObject,
    annotation: ProbeAnnotation,
    sites: List[str],
    just_beta: bool,
    pseudo: float,
    reader: ChannelReader,
) -> np.ndarray:
    mu = normalize_sample(obj, annotation, reader=reader).subset(sites)
    if just_beta:
        return np.asarray(get_beta(mu.M.to_numpy(), mu.U.to_numpy(), pseudo=pseudo))
    return np.concatenate([mu.M.to_numpy(), mu.U.to_numpy()])


def _output_sites(
    annotation: ProbeAnnotation, cpglist_remove: Optional[Sequence[str]]
) -> List[str]:
    sites = annotation.probe_names
    if cpglist_remove:
        remove = set(cpglist_remove)
        absent = remove.difference(sites)
        if absent:
            logger.warning(
                f"{len(absent)} probes in cpglist_remove are not in the output, "
                f"e.g. {sorted(absent)[:5]}"
            )
        sites = [s for s in sites if s not in remove]
    return sites


def normalize_samples(
    objects: Sequence[Union[NormalizationObject, Mapping[str, Any]]],
    annotation: ProbeAnnotation,
    pseudo: float = 100,
    just_beta: bool = True,
    cpglist_remove: Optional[Sequence[str]] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    n_jobs: int = 1,
    hdf5_filename: Optional[Union[str, Path]] = None,
    reader: ChannelReader = read_idat,
    tempdir: Optional[str] = None,
) -> Union[pd.DataFrame, Dict[str, pd.DataFrame], Path]:
    """
    Normalize a set of batch-corrected samples.

    Parameters
    ----------
    objects : list of NormalizationObject
        Output of :func:`~funnorm.core.batch_correction.normalize_objects`
        (at least two).
    annotation : ProbeAnnotation
        Probe annotation of the samples' array.
    pseudo : float, default 100
        Denominator stabilizer of the methylation proportion.
    just_beta : bool, default True
        Return methylation proportions; otherwise the M and U matrices.
    cpglist_remove : list of str, optional
        Probes excluded from the output. Entries not in the output are
        reported with a warning.
    max_bytes : int, default 2**30 - 1
        Memory bound of the parallel map.
    n_jobs : int, default 1
        Parallel workers.
    hdf5_filename : str or Path, optional
        Stream the output into this HDF5 store instead of returning it in
        memory (datasets ``matrix`` or ``M``/``U``).
    reader : callable, default read_idat
        Channel reader.
    tempdir : str, optional
        Parent directory of the parallel map's spill files.

    Returns
    -------
    pd.DataFrame, dict or Path
        Probes x samples beta matrix, ``{"M": ..., "U": ...}``, or the HDF5
        path when ``hdf5_filename`` is given.

    Raises
    ------
    InsufficientSamplesError
        Fewer than two objects.
    InvalidObjectError
        An object is invalid or has not been batch-corrected.
    """
    if len(objects) < 2:
        raise InsufficientSamplesError(
            f"Normalization needs at least 2 samples, got {len(objects)}"
        )
    objects = coerce_objects(objects)
    not_normalized = [obj.basename for obj in objects if not obj.is_normalized]
    if not_normalized:
        raise InvalidObjectError(f"Objects have not been normalized: {not_normalized[:5]}")

    sites = _output_sites(annotation, cpglist_remove)
    samples = [obj.name for obj in objects]
    n_values = len(sites) * (1 if just_beta else 2)
    logger.info(
        f"Normalizing {len(objects)} samples over {len(sites)} probes "
        f"(just_beta={just_beta}, pseudo={pseudo})"
    )

    fn = partial(
        _normalized_column,
        annotation=annotation,
        sites=sites,
        just_beta=just_beta,
        pseudo=pseudo,
        reader=reader,
    )
    ret_bytes = max(8 * n_values, 1)

    if hdf5_filename is not None:
        datasets = ("matrix",) if just_beta else ("M", "U")
        store = HDF5MatrixStore.create(hdf5_filename, sites, samples, datasets=datasets)

        def write_block(start: int, results: List[Any]) -> None:
            block = np.column_stack(
                [
                    np.full(n_values, np.nan) if isinstance(r, ItemFailure) else r
                    for r in results
                ]
            )
            if just_beta:
                store.write_columns(start, block, "matrix")
            else:
                store.write_columns(start, block[: len(sites)], "M")
                store.write_columns(start, block[len(sites):], "U")

        bounded_map_to_store(
            objects, fn, ret_bytes, write_block, max_bytes=max_bytes, n_jobs=n_jobs
        )
        logger.info(f"Normalized matrix written to {store.path}")
        return store.path

    columns = bounded_map(
        objects, fn, ret_bytes, max_bytes=max_bytes, n_jobs=n_jobs, tempdir=tempdir
    )
    values = np.column_stack(columns)
    if just_beta:
        return pd.DataFrame(values, index=sites, columns=samples)
    return {
        "M": pd.DataFrame(values[: len(sites)], index=sites, columns=samples),
        "U": pd.DataFrame(values[len(sites):], index=sites, columns=samples),
    }
