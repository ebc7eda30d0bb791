#!/usr/bin/env python
# coding: utf-8


"""
Core signal containers used throughout the funnorm pipeline.

Key Components
--------------
RGSet

- Raw two-channel signal of one sample: a red and a green frame with columns
``Mean`` and ``NBeads`` indexed by integer bead-array address.

MU

- Methylated and unmethylated signal of one sample, two float Series indexed
by probe name and aligned on the same names.

Both containers validate themselves on construction.
"""

from dataclasses import dataclass
from typing import Dict

import pandas as pd

CHANNEL_COLUMNS = ("Mean", "NBeads")


def _ensure_channel_frame(df: pd.DataFrame, dye: str) -> pd.DataFrame:
    """
    Validate one channel frame and coerce its index to integer addresses.

    Raises
    ------
    ValueError
        If a required column is missing or addresses are not integral.
    """
    missing = [c for c in CHANNEL_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Channel {dye} is missing columns: {missing}")
    df = df.copy()
    df.index = df.index.astype("int64")
    df.index.name = "address"
    return df


@dataclass
class RGSet:
    """
    Raw red/green intensities of one sample.

    Parameters
    ----------
    R, G : pd.DataFrame
        Per-address ``Mean`` intensity and ``NBeads`` bead count for the red
        and green channels.
    basename : str, optional
        Basename the signal was read from.
    """

    R: pd.DataFrame
    G: pd.DataFrame
    basename: str = ""

    def __post_init__(self) -> None:
        self.R = _ensure_channel_frame(self.R, "R")
        self.G = _ensure_channel_frame(self.G, "G")

    def channel(self, dye: str) -> pd.DataFrame:
        if dye == "R":
            return self.R
        if dye == "G":
            return self.G
        raise ValueError(f"Unknown channel: {dye!r}")

    def means(self) -> Dict[str, pd.Series]:
        """Mean intensities of both channels as float Series."""
        return {dye: self.channel(dye)["Mean"].astype(float) for dye in ("R", "G")}


@dataclass
class MU:
    """
    Methylated (``M``) and unmethylated (``U``) signal by probe name.

    ``U`` is reindexed to the names of ``M`` on construction.
    """

    M: pd.Series
    U: pd.Series

    def __post_init__(self) -> None:
        self.M = self.M.astype(float)
        self.U = self.U.reindex(self.M.index).astype(float)

    def __getitem__(self, target: str) -> pd.Series:
        if target == "M":
            return self.M
        if target == "U":
            return self.U
        raise KeyError(target)

    def subset(self, names) -> "MU":
        """Restrict both signals to ``names`` (missing names become NaN)."""
        names = pd.Index(names)
        return MU(M=self.M.reindex(names), U=self.U.reindex(names))
