#!/usr/bin/env python
# coding: utf-8


"""
Input utilities for locating and reading raw two-channel intensity files.

Each sample is stored as a pair of files sharing a *basename*:
``<basename>_Grn.idat`` (green channel) and ``<basename>_Red.idat`` (red
channel), optionally gzip-compressed.

Features
--------
- Case-insensitive basename discovery, optionally recursive
- IDAT channel reader (backed by ``pylluminator``) returning per-address
  ``Mean`` / ``NBeads``
- ``read_rg()`` – read both channels of a sample restricted to the addresses
  an annotation lists for each channel
- Pluggable channel reader: any callable ``reader(filename) -> DataFrame``
  with ``Mean`` and ``NBeads`` columns indexed by address can replace
  ``read_idat()``
"""


import re
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import pandas as pd
from pylluminator.read_idat import IdatDataset

from funnorm.errors import InvalidAnnotationError, MissingFileError
from funnorm.io.annotation import ProbeAnnotation
from funnorm.io.data_utils import RGSet
from funnorm.utils.logger import logger

CHANNEL_SUFFIXES = {"G": "_Grn.idat", "R": "_Red.idat"}

_CHANNEL_PATTERN = re.compile(r"_(grn|red)\.idat(\.gz)?$", re.IGNORECASE)

ChannelReader = Callable[[Union[str, Path]], pd.DataFrame]


def list_basenames(path: Union[str, Path], recursive: bool = False) -> List[str]:
    """
    List sample basenames of the intensity files in a directory.

    Parameters
    ----------
    path : str or Path
        Directory to scan.
    recursive : bool, default False
        Include files in subdirectories.

    Returns
    -------
    list of str
        Basenames (file paths with the channel suffix removed), green files
        first, in sorted order and without duplicates.
    """
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError(f"Directory not found: {path}")

    candidates = path.rglob("*") if recursive else path.glob("*")
    files = sorted(str(p) for p in candidates if p.is_file() and _CHANNEL_PATTERN.search(p.name))
    grn = [f for f in files if re.search(r"_grn\.idat(\.gz)?$", f, re.IGNORECASE)]
    red = [f for f in files if re.search(r"_red\.idat(\.gz)?$", f, re.IGNORECASE)]

    basenames = get_basenames(grn + red)
    logger.info(f"Found {len(basenames)} basenames in {path}")
    return basenames


def get_basenames(filenames: Iterable[Union[str, Path]]) -> List[str]:
    """Strip channel suffixes from ``filenames`` and drop duplicates, keeping order."""
    seen = {}
    for filename in filenames:
        seen.setdefault(_CHANNEL_PATTERN.sub("", str(filename)), None)
    return list(seen)


def channel_path(basename: Union[str, Path], dye: str) -> Optional[Path]:
    """Existing file holding channel ``dye`` of ``basename``, or ``None``."""
    base = str(basename)
    suffix = CHANNEL_SUFFIXES[dye]
    for candidate in (base + suffix, base + suffix + ".gz"):
        p = Path(candidate)
        if p.exists():
            return p
    # case-insensitive fallback for files such as *_GRN.IDAT
    parent = Path(base).parent
    stem = Path(base).name.lower() + suffix.lower()
    if parent.is_dir():
        for p in parent.iterdir():
            if p.name.lower() in (stem, stem + ".gz"):
                return p
    return None


def rg_exists(basename: Union[str, Path]) -> bool:
    """Whether both channel files of ``basename`` exist."""
    return all(channel_path(basename, dye) is not None for dye in ("R", "G"))


def read_idat(filename: Union[str, Path]) -> pd.DataFrame:
    """
    Read one channel of a sample from a binary IDAT file.

    Parsing is delegated to :class:`pylluminator.read_idat.IdatDataset`;
    this adapter only renames its per-probe table.

    Parameters
    ----------
    filename : str or Path
        ``.idat`` or ``.idat.gz`` file.

    Returns
    -------
    pd.DataFrame
        Columns ``Mean``, ``SD``, ``NBeads`` indexed by bead-array address.

    Raises
    ------
    MissingFileError
        If the file does not exist.
    ValueError
        If the file is not a version-3 IDAT file.
    """
    filename = Path(filename)
    if not filename.exists():
        raise MissingFileError(f"Intensity file not found: {filename}")

    probes = IdatDataset(str(filename)).probes_df
    if "illumina_id" in probes.columns:
        probes = probes.set_index("illumina_id")

    frame = pd.DataFrame(
        {
            "Mean": probes["mean_value"].astype("float64").to_numpy(),
            "SD": probes["std_dev"].astype("float64").to_numpy(),
            "NBeads": probes["n_beads"].astype("int64").to_numpy(),
        },
        index=pd.Index(probes.index.astype("int64"), name="address"),
    )
    logger.debug(f"Read {len(frame)} addresses from {filename}")
    return frame


def read_rg(
    basename: Union[str, Path],
    annotation: ProbeAnnotation,
    reader: ChannelReader = read_idat,
) -> RGSet:
    """
    Read both channels of a sample.

    Each channel is restricted to the addresses the annotation reads from it.

    Parameters
    ----------
    basename : str or Path
        Sample basename.
    annotation : ProbeAnnotation
        Probe annotation of the sample's array.
    reader : callable, default read_idat
        Channel reader returning ``Mean`` / ``NBeads`` by address.

    Raises
    ------
    MissingFileError
        If either channel file is absent.
    InvalidAnnotationError
        If the annotation lists addresses the data does not contain.
    """
    channels = {}
    for dye in ("R", "G"):
        path = channel_path(basename, dye)
        if path is None:
            raise MissingFileError(
                f"Missing {CHANNEL_SUFFIXES[dye]} file for basename {basename}"
            )
        raw = reader(path)
        wanted = annotation.addresses(dye)
        present = raw.index.isin(wanted)
        n_missing = len(wanted) - int(pd.Index(wanted).isin(raw.index).sum())
        if n_missing:
            raise InvalidAnnotationError(
                f"{n_missing} {dye} addresses of annotation {annotation.array_id!r} "
                f"are absent from {path}"
            )
        channels[dye] = raw.loc[present, ["Mean", "NBeads"]]

    return RGSet(R=channels["R"], G=channels["G"], basename=str(basename))
