#!/usr/bin/env python
# coding: utf-8


"""
Output utilities for normalized methylation matrices.

Features
--------
- :class:`HDF5MatrixStore` – on-disk probes x samples matrices written column
  block by column block, so the full matrix never has to fit in memory
- ``retrieve_hdf5_matrix()`` – load a store, optionally restricted to a subset
  of probes and samples in the caller's order
- ``export_matrix()`` – write an in-memory matrix to csv or tsv

All export functions include overwrite protection, automatic directory
creation and informative logging.

HDF5 layout
-----------
``/rows``      probe names (variable-length UTF-8 strings)
``/cols``      sample names
``/<dataset>`` float64 matrix (``len(rows)`` x ``len(cols)``), chunked by column;
               ``matrix`` for methylation proportions, ``M`` and ``U`` for
               signal pairs
"""


from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from funnorm.utils.logger import logger

try:
    import h5py
except ImportError:
    h5py = None


def _require_h5py() -> None:
    if h5py is None:
        raise RuntimeError("h5py is required for HDF5 matrix storage: pip install h5py")


def _check_overwrite(path: Path, overwrite: bool) -> None:
    """
    Helper that raises FileExistsError if the path exists and overwriting is disabled.

    Parameters
    ----------
    path : Path
        File path to check.
    overwrite : bool
        Permission flag.

    Raises
    ------
    FileExistsError
        When the file exists and ``overwrite=False``.
    """
    if not overwrite and path.exists():
        raise FileExistsError(f"{path} exists and overwrite=False")


def _decode(values) -> List[str]:
    return [v.decode("utf-8") if isinstance(v, bytes) else str(v) for v in values]


class HDF5MatrixStore:
    """
    Probes x samples matrices stored in an HDF5 file.

    Create a store with :meth:`create`, then fill it with
    :meth:`write_columns`. Unwritten cells hold NaN.

    Parameters
    ----------
    path : str or Path
        Existing store file.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        _require_h5py()
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"HDF5 store not found: {self.path}")
        with h5py.File(self.path, "r") as h5:
            self.rows = _decode(h5["rows"][()])
            self.cols = _decode(h5["cols"][()])
            self.datasets = [k for k in h5.keys() if k not in ("rows", "cols")]

    @classmethod
    def create(
        cls,
        path: Union[str, Path],
        rows: Sequence[str],
        cols: Sequence[str],
        datasets: Sequence[str] = ("matrix",),
        compress: bool = True,
        overwrite: bool = True,
    ) -> "HDF5MatrixStore":
        """
        Create an empty store with the given probe and sample names.

        Raises
        ------
        FileExistsError
            When ``overwrite=False`` and the file exists.
        """
        _require_h5py()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        _check_overwrite(path, overwrite)

        n_rows, n_cols = len(rows), len(cols)
        str_dtype = h5py.string_dtype(encoding="utf-8")
        with h5py.File(path, "w") as h5:
            h5.create_dataset("rows", data=np.array(list(rows), dtype=object), dtype=str_dtype)
            h5.create_dataset("cols", data=np.array(list(cols), dtype=object), dtype=str_dtype)
            for name in datasets:
                h5.create_dataset(
                    name,
                    shape=(n_rows, n_cols),
                    dtype="float64",
                    fillvalue=np.nan,
                    chunks=(max(n_rows, 1), 1) if n_rows and n_cols else None,
                    compression="gzip" if compress and n_rows and n_cols else None,
                )
            h5.attrs["created_by"] = "funnorm"
        logger.info(f"Created HDF5 store {path} ({n_rows} x {n_cols}, {list(datasets)})")
        return cls(path)

    @property
    def shape(self):
        return len(self.rows), len(self.cols)

    def write_columns(
        self, start: int, block: np.ndarray, dataset: str = "matrix"
    ) -> None:
        """
        Write a block of consecutive columns beginning at column ``start``.

        Parameters
        ----------
        start : int
            Index of the first column written.
        block : ndarray
            ``len(rows)`` x k values.
        dataset : str, default "matrix"
            Target matrix.
        """
        block = np.asarray(block, dtype=float)
        if block.ndim == 1:
            block = block[:, None]
        if block.shape[0] != len(self.rows):
            raise ValueError(
                f"Block has {block.shape[0]} rows; store has {len(self.rows)}"
            )
        end = start + block.shape[1]
        if start < 0 or end > len(self.cols):
            raise IndexError(f"Columns [{start}, {end}) outside 0..{len(self.cols)}")
        with h5py.File(self.path, "r+") as h5:
            h5[dataset][:, start:end] = block
        logger.debug(f"Wrote columns [{start}, {end}) of {dataset} to {self.path}")

    def read(
        self,
        sites: Optional[Sequence[str]] = None,
        samples: Optional[Sequence[str]] = None,
        dataset: str = "matrix",
    ) -> pd.DataFrame:
        return retrieve_hdf5_matrix(self.path, sites, samples, dataset)


def _positions(names: List[str], wanted: Optional[Sequence[str]], axis: str) -> np.ndarray:
    if wanted is None:
        return np.arange(len(names))
    lookup: Dict[str, int] = {}
    for i, n in enumerate(names):
        lookup.setdefault(n, i)
    missing = [w for w in wanted if w not in lookup]
    if missing:
        raise KeyError(f"{len(missing)} {axis} not in store, e.g. {missing[:5]}")
    return np.array([lookup[w] for w in wanted], dtype=int)


def retrieve_hdf5_matrix(
    path: Union[str, Path],
    sites: Optional[Sequence[str]] = None,
    samples: Optional[Sequence[str]] = None,
    dataset: str = "matrix",
) -> pd.DataFrame:
    """
    Load a matrix from an HDF5 store.

    Parameters
    ----------
    path : str or Path
        Store created by :meth:`HDF5MatrixStore.create`.
    sites : list of str, optional
        Probe names to load, in the order returned (all if ``None``).
    samples : list of str, optional
        Sample names to load, in the order returned (all if ``None``).
    dataset : str, default "matrix"
        Matrix to read.

    Returns
    -------
    pd.DataFrame
        Probes x samples values.

    Raises
    ------
    KeyError
        If a requested probe or sample is absent.
    """
    _require_h5py()
    path = Path(path)
    with h5py.File(path, "r") as h5:
        rows = _decode(h5["rows"][()])
        cols = _decode(h5["cols"][()])
        r = _positions(rows, sites, "sites")
        c = _positions(cols, samples, "samples")

        # h5py fancy indexing needs increasing, unique indices
        ur, r_inv = np.unique(r, return_inverse=True)
        uc, c_inv = np.unique(c, return_inverse=True)
        if len(ur) == 0 or len(uc) == 0:
            values = np.empty((len(r), len(c)))
        else:
            values = h5[dataset][ur, :][:, uc][r_inv][:, c_inv]

    return pd.DataFrame(
        values,
        index=[rows[i] for i in r],
        columns=[cols[i] for i in c],
    )


def export_matrix(
    matrix: pd.DataFrame,
    output_path: Union[str, Path],
    format: Optional[str] = None,
    overwrite: bool = True,
) -> Path:
    """
    Write a probes x samples matrix to csv or tsv.

    Parameters
    ----------
    matrix : pd.DataFrame
        Matrix to export.
    output_path : str or Path
        Destination (format inferred from the extension if ``format`` is omitted).
    format : {"csv", "tsv"}, optional
        Output format.
    overwrite : bool, default True
        Raise FileExistsError if the file exists and this is False.

    Returns
    -------
    Path
        Written file.
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    _check_overwrite(path, overwrite)

    fmt = (format or path.suffix.lstrip(".") or "csv").lower()
    if fmt == "csv":
        matrix.to_csv(path, index=True)
    elif fmt in ("tsv", "txt"):
        matrix.to_csv(path, sep="\t", index=True)
    else:
        raise ValueError(f"Unsupported format: {fmt}")

    logger.info(f"Matrix ({matrix.shape[0]} x {matrix.shape[1]}) exported to {path}")
    return path
