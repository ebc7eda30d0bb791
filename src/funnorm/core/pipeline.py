#!/usr/bin/env python
# coding: utf-8


"""
End-to-end entry points.

- ``normalize_dataset()`` – discover samples, build every normalization
  object, batch-correct once and normalize every sample
- ``save_detection_pvalues()`` / ``load_detection_pvalues()`` – probes x samples
  detection p-value matrix streamed into an HDF5 store
"""


from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from funnorm.config.config_manager import (
    NormalizationSettings,
    get_settings,
    validate_settings,
)
from funnorm.core.batch_correction import normalize_objects
from funnorm.core.controls import extract_detection_pvalues
from funnorm.core.normalization_object import compute_normalization_objects
from funnorm.core.normalize_samples import normalize_samples
from funnorm.core.parallel import DEFAULT_MAX_BYTES, ItemFailure, bounded_map_to_store
from funnorm.errors import MissingFileError
from funnorm.io.annotation import ProbeAnnotation
from funnorm.io.readers import (
    ChannelReader,
    get_basenames,
    list_basenames,
    read_idat,
    read_rg,
    rg_exists,
)
from funnorm.io.writers import HDF5MatrixStore, retrieve_hdf5_matrix
from funnorm.utils.logger import logger


def _resolve_settings(
    config: Optional[Union[NormalizationSettings, Dict[str, Any]]],
) -> NormalizationSettings:
    if config is None:
        return get_settings()
    if isinstance(config, NormalizationSettings):
        return config
    return validate_settings(config)


def normalize_dataset(
    annotation: ProbeAnnotation,
    path: Optional[Union[str, Path]] = None,
    filenames: Optional[Sequence[Union[str, Path]]] = None,
    recursive: bool = False,
    config: Optional[Union[NormalizationSettings, Dict[str, Any]]] = None,
    sex: Optional[Sequence[Optional[str]]] = None,
    reader: ChannelReader = read_idat,
    min_annotation_rows: int = 100_000,
    hdf5_filename: Optional[Union[str, Path]] = None,
) -> Union[pd.DataFrame, Path]:
    """
    Functionally normalize every sample of a dataset.

    Parameters
    ----------
    annotation : ProbeAnnotation
        Probe annotation of the samples' array.
    path : str or Path, optional
        Directory scanned for intensity files (ignored if ``filenames`` is given).
    filenames : list, optional
        Intensity files or basenames to normalize.
    recursive : bool, default False
        Scan ``path`` recursively.
    config : NormalizationSettings or dict, optional
        Options; defaults to the global configuration.
    sex : list, optional
        Per-sample sex overrides.
    reader : callable, default read_idat
        Channel reader.
    min_annotation_rows : int, default 100000
        Smallest plausible annotation size.
    hdf5_filename : str or Path, optional
        Stream the beta matrix into this HDF5 store.

    Returns
    -------
    pd.DataFrame or Path
        Probes x samples beta matrix, or the HDF5 store path.
    """
    if filenames is None and path is None:
        raise ValueError("Either path or filenames must be given")
    settings = _resolve_settings(config)
    basenames = get_basenames(filenames) if filenames is not None else list_basenames(path, recursive)
    logger.info(f"Normalizing dataset of {len(basenames)} samples")

    objects = compute_normalization_objects(
        basenames,
        annotation,
        number_quantiles=settings.number_quantiles,
        dye_intensity=settings.dye_intensity,
        detection_threshold=settings.detection_threshold,
        bead_threshold=settings.bead_threshold,
        sex_cutoff=settings.sex_cutoff,
        reader=reader,
        min_annotation_rows=min_annotation_rows,
        n_jobs=settings.n_jobs,
        max_bytes=settings.max_bytes,
    )
    objects = normalize_objects(
        objects,
        number_pcs=settings.number_pcs,
        sex_cutoff=settings.sex_cutoff,
        sex=sex,
    )
    return normalize_samples(
        objects,
        annotation,
        pseudo=settings.pseudo,
        just_beta=True,
        cpglist_remove=settings.cpglist_remove,
        max_bytes=settings.max_bytes,
        n_jobs=settings.n_jobs,
        hdf5_filename=hdf5_filename,
        reader=reader,
    )


def _detection_column(
    basename: str, annotation: ProbeAnnotation, sites: List[str], reader: ChannelReader
) -> np.ndarray:
    rg = read_rg(basename, annotation, reader=reader)
    return extract_detection_pvalues(rg, annotation).reindex(sites).to_numpy(dtype=float)


def save_detection_pvalues(
    basenames: Sequence[str],
    annotation: ProbeAnnotation,
    hdf5_filename: Union[str, Path],
    max_bytes: int = DEFAULT_MAX_BYTES,
    n_jobs: int = 1,
    reader: ChannelReader = read_idat,
) -> Path:
    """
    Compute detection p-values of every sample into an HDF5 store.

    Samples are processed through the bounded map and written chunk by chunk,
    so the full matrix is never held in memory.

    Raises
    ------
    MissingFileError
        If any sample's intensity files are not accessible.
    """
    basenames = list(basenames)
    inaccessible = [b for b in basenames if not rg_exists(b)]
    if inaccessible:
        raise MissingFileError(
            f"Intensity files are not accessible for {len(inaccessible)} samples, "
            f"e.g. {inaccessible[:5]}"
        )

    sites = annotation.probe_names
    samples = [Path(b).name for b in basenames]
    store = HDF5MatrixStore.create(hdf5_filename, sites, samples)

    def write_block(start: int, results: List[Any]) -> None:
        store.write_columns(
            start,
            np.column_stack(
                [
                    np.full(len(sites), np.nan) if isinstance(r, ItemFailure) else r
                    for r in results
                ]
            ),
        )

    logger.info(f"Saving detection p-values of {len(basenames)} samples to {store.path}")
    bounded_map_to_store(
        basenames,
        partial(_detection_column, annotation=annotation, sites=sites, reader=reader),
        ret_bytes=max(8 * len(sites), 1),
        write_block=write_block,
        max_bytes=max_bytes,
        n_jobs=n_jobs,
    )
    return store.path


def load_detection_pvalues(
    hdf5_filename: Union[str, Path],
    sites: Optional[Sequence[str]] = None,
    samples: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Load detection p-values saved by :func:`save_detection_pvalues`."""
    return retrieve_hdf5_matrix(hdf5_filename, sites, samples)
