#!/usr/bin/env python
# coding: utf-8


"""
Probe annotation tables for two-channel methylation arrays.

Every bead-array address used by the normalization pipeline is described by one
row of a probe table with the columns:

``type``
    ``"i"``, ``"ii"`` or ``"control"``.
``target``
    Signal role: ``"M"``, ``"U"``, ``"OOB"``, the genotyping roles ``"MG"`` /
    ``"UG"``, or a control target such as ``"NORM_A"`` or ``"NEGATIVE"``.
``dye``
    Channel the address is read from (``"R"`` or ``"G"``).
``address``
    Integer bead-array address.
``name``
    Probe name (missing for out-of-band and control rows).
``ext``
    Extended type of control probes.
``chr``, ``pos``
    Genomic location joined by probe name.

Key Components
--------------
- :class:`ProbeAnnotation` – validated wrapper with address and subset lookups
- :func:`build_probe_table` – assemble a table from manifest-style frames
- :func:`quantile_probe_subsets` – the twelve probe subsets normalized by quantile
- :func:`applicable_probe_subsets` – subsets carried by a sample of a given sex
- :class:`AnnotationRegistry` – explicit per-array table registry with lazy loaders
"""

from __future__ import annotations

from enum import Enum
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from funnorm.errors import InvalidAnnotationError, InvalidSexLabelError
from funnorm.utils.logger import logger

REQUIRED_COLUMNS = ("type", "target", "dye", "address", "name", "ext", "chr", "pos")


class ProbeType(str, Enum):
    """Codes of the ``type`` column."""

    TYPE_I = "i"
    TYPE_II = "ii"
    CONTROL = "control"


class Channel(str, Enum):
    """Codes of the ``dye`` column."""

    RED = "R"
    GREEN = "G"


class SignalRole(str, Enum):
    """Non-control codes of the ``target`` column."""

    METHYLATED = "M"
    UNMETHYLATED = "U"
    OUT_OF_BAND = "OOB"
    SNP_METHYLATED = "MG"
    SNP_UNMETHYLATED = "UG"


_SNP_ROLES = {
    SignalRole.METHYLATED: SignalRole.SNP_METHYLATED,
    SignalRole.UNMETHYLATED: SignalRole.SNP_UNMETHYLATED,
}

_CPG_ROLES = [SignalRole.METHYLATED.value, SignalRole.UNMETHYLATED.value]


def _code(value):
    return value.value if isinstance(value, Enum) else value


SUBSET_NAMES = (
    "genomic.iG",
    "genomic.iR",
    "genomic.ii",
    "autosomal.iG",
    "autosomal.iR",
    "autosomal.ii",
    "not.y.iG",
    "not.y.iR",
    "not.y.ii",
    "sex",
    "chry",
    "chrx",
)

# Subsets whose quantiles are normalized within each sex when both sexes are present
SEX_SPECIFIC_SUBSETS = (
    "genomic.iG",
    "genomic.iR",
    "genomic.ii",
    "not.y.iG",
    "not.y.iR",
    "not.y.ii",
    "sex",
    "chry",
    "chrx",
)

_APPLICABLE_SUBSETS = {
    (True, "M"): ["autosomal.iG", "autosomal.iR", "autosomal.ii", "sex"],
    (True, "F"): ["autosomal.iG", "autosomal.iR", "autosomal.ii", "chrx", "chry"],
    (False, "M"): ["genomic.iG", "genomic.iR", "genomic.ii"],
    (False, "F"): ["not.y.iG", "not.y.iR", "not.y.ii", "chry"],
}


def _rows(
    type_: ProbeType,
    target: Union[SignalRole, Sequence[str]],
    dye: Channel,
    address: Iterable,
    name: Optional[Iterable] = None,
    ext: Optional[Iterable] = None,
) -> pd.DataFrame:
    address = pd.Series(list(address))
    n = len(address)
    if isinstance(target, SignalRole):
        target = [target.value] * n
    return pd.DataFrame(
        {
            "type": type_.value,
            "target": list(target),
            "dye": dye.value,
            "address": address.values,
            "name": list(name) if name is not None else [np.nan] * n,
            "ext": list(ext) if ext is not None else [np.nan] * n,
        }
    )


def _genotyping_role(names: pd.Series, role: SignalRole) -> List[str]:
    # rs-prefixed probes measure SNPs rather than CpG sites
    is_snp = names.astype(str).str.startswith("rs")
    return [_SNP_ROLES[role].value if snp else role.value for snp in is_snp]


def build_probe_table(
    type1_red: pd.DataFrame,
    type1_green: pd.DataFrame,
    type2: pd.DataFrame,
    controls: pd.DataFrame,
    locations: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Assemble a probe table from manifest-style probe characteristics.

    Type I probes contribute a methylated row (``AddressB``) and an
    unmethylated row (``AddressA``) on their own channel, and two out-of-band
    rows on the opposite channel. Type II probes share one address
    (``AddressA``) read from green for the methylated role and from red for
    the unmethylated role. Control probes are listed once per channel.
    Probes named ``rs*`` receive the genotyping roles ``MG`` / ``UG``.

    Parameters
    ----------
    type1_red, type1_green : pd.DataFrame
        Type I probes with columns ``Name``, ``AddressA``, ``AddressB``.
    type2 : pd.DataFrame
        Type II probes with columns ``Name``, ``AddressA``.
    controls : pd.DataFrame
        Control probes with columns ``Address``, ``Type``, ``ExtendedType``.
    locations : pd.DataFrame, optional
        Genomic locations indexed by probe name with columns ``chr`` and ``pos``.

    Returns
    -------
    pd.DataFrame
        Probe table with the columns listed in :data:`REQUIRED_COLUMNS`.
    """
    for label, frame, cols in (
        ("type1_red", type1_red, ("Name", "AddressA", "AddressB")),
        ("type1_green", type1_green, ("Name", "AddressA", "AddressB")),
        ("type2", type2, ("Name", "AddressA")),
        ("controls", controls, ("Address", "Type", "ExtendedType")),
    ):
        missing = [c for c in cols if c not in frame.columns]
        if missing:
            raise InvalidAnnotationError(f"{label} is missing columns: {missing}")

    type_i, type_ii = ProbeType.TYPE_I, ProbeType.TYPE_II
    red, green = Channel.RED, Channel.GREEN
    meth, unmeth, oob = SignalRole.METHYLATED, SignalRole.UNMETHYLATED, SignalRole.OUT_OF_BAND
    parts = [
        _rows(type_i, _genotyping_role(type1_red["Name"], meth), red,
              type1_red["AddressB"], type1_red["Name"]),
        _rows(type_i, _genotyping_role(type1_green["Name"], meth), green,
              type1_green["AddressB"], type1_green["Name"]),
        _rows(type_ii, _genotyping_role(type2["Name"], meth), green,
              type2["AddressA"], type2["Name"]),
        _rows(type_i, _genotyping_role(type1_red["Name"], unmeth), red,
              type1_red["AddressA"], type1_red["Name"]),
        _rows(type_i, _genotyping_role(type1_green["Name"], unmeth), green,
              type1_green["AddressA"], type1_green["Name"]),
        _rows(type_ii, _genotyping_role(type2["Name"], unmeth), red,
              type2["AddressA"], type2["Name"]),
        _rows(type_i, oob, green, type1_red["AddressA"]),
        _rows(type_i, oob, green, type1_red["AddressB"]),
        _rows(type_i, oob, red, type1_green["AddressA"]),
        _rows(type_i, oob, red, type1_green["AddressB"]),
        _rows(ProbeType.CONTROL, controls["Type"], red, controls["Address"],
              ext=controls["ExtendedType"]),
        _rows(ProbeType.CONTROL, controls["Type"], green, controls["Address"],
              ext=controls["ExtendedType"]),
    ]
    table = pd.concat(parts, ignore_index=True)
    table["address"] = table["address"].astype("int64")

    if locations is not None:
        loc = locations.reindex(table["name"].values)
        table["chr"] = loc["chr"].values if "chr" in loc else np.nan
        table["pos"] = loc["pos"].values if "pos" in loc else np.nan
    else:
        table["chr"] = np.nan
        table["pos"] = np.nan

    logger.info(
        f"Built probe table: {len(table)} rows "
        f"({table['name'].nunique()} named probes, "
        f"{int((table['type'] == 'control').sum() // 2)} controls)"
    )
    return table


class ProbeAnnotation:
    """
    Validated, read-only view of a probe table for one array type.

    Parameters
    ----------
    table : pd.DataFrame
        Probe table with the columns listed in :data:`REQUIRED_COLUMNS`.
    array_id : str, default "custom"
        Identifier of the array the table describes.

    Raises
    ------
    InvalidAnnotationError
        If a required column is missing or addresses are not integral.
    """

    def __init__(self, table: pd.DataFrame, array_id: str = "custom") -> None:
        missing = [c for c in REQUIRED_COLUMNS if c not in table.columns]
        if missing:
            raise InvalidAnnotationError(
                f"Annotation for {array_id!r} is missing columns: {missing}"
            )
        table = table.reset_index(drop=True).copy()
        try:
            table["address"] = table["address"].astype("int64")
        except (TypeError, ValueError) as e:
            raise InvalidAnnotationError(f"Non-integer probe addresses: {e}") from e

        self.table = table
        self.array_id = array_id
        self._subsets: Optional[Dict[str, Dict[str, List[str]]]] = None

    def __len__(self) -> int:
        return len(self.table)

    def __repr__(self) -> str:
        return f"ProbeAnnotation(array_id={self.array_id!r}, rows={len(self)})"

    def check_size(self, min_rows: int = 100_000) -> None:
        """Raise :class:`InvalidAnnotationError` if the table is implausibly small."""
        if len(self) < min_rows:
            raise InvalidAnnotationError(
                f"Annotation for {self.array_id!r} has {len(self)} rows; "
                f"at least {min_rows} expected"
            )

    def rows(
        self,
        dye: Optional[Union[Channel, str]] = None,
        targets: Optional[Iterable[Union[SignalRole, str]]] = None,
        types: Optional[Iterable[Union[ProbeType, str]]] = None,
    ) -> pd.DataFrame:
        """Return the probe rows matching the given channel, roles and types."""
        mask = pd.Series(True, index=self.table.index)
        if dye is not None:
            mask &= self.table["dye"] == _code(dye)
        if targets is not None:
            mask &= self.table["target"].isin([_code(t) for t in targets])
        if types is not None:
            mask &= self.table["type"].isin([_code(t) for t in types])
        return self.table[mask]

    def addresses(
        self,
        dye: Union[Channel, str],
        targets: Optional[Iterable[Union[SignalRole, str]]] = None,
        types: Optional[Iterable[Union[ProbeType, str]]] = None,
    ) -> np.ndarray:
        """Unique addresses read from ``dye`` for the given roles and types."""
        return pd.unique(self.rows(dye, targets, types)["address"].to_numpy())

    @property
    def probe_names(self) -> List[str]:
        """Unique names of CpG probes, in table order."""
        named = self.table[self.table["target"].isin(_CPG_ROLES)]["name"].dropna()
        return list(pd.unique(named))

    @property
    def quantile_probe_subsets(self) -> Dict[str, Dict[str, List[str]]]:
        if self._subsets is None:
            self._subsets = quantile_probe_subsets(self.table)
        return self._subsets

    def featureset(self) -> pd.DataFrame:
        """Distinct (type, target, name) triples of the CpG probes."""
        cpg = self.table[self.table["target"].isin(_CPG_ROLES)]
        return (
            cpg[["type", "target", "name"]]
            .dropna(subset=["name"])
            .drop_duplicates()
            .reset_index(drop=True)
        )


def _as_table(annotation: Union[ProbeAnnotation, pd.DataFrame]) -> pd.DataFrame:
    return annotation.table if isinstance(annotation, ProbeAnnotation) else annotation


def quantile_probe_subsets(
    annotation: Union[ProbeAnnotation, pd.DataFrame],
) -> Dict[str, Dict[str, List[str]]]:
    """
    Partition probe names into the twelve subsets normalized by quantile.

    Subsets cross probe design (type I green, type I red, type II) with genomic
    membership (any chromosome, autosomes, everything but chrY), plus the
    sex-chromosome subsets ``sex``, ``chry`` and ``chrx``.

    Returns
    -------
    dict
        ``{subset_name: {"M": [names], "U": [names]}}`` in :data:`SUBSET_NAMES`
        order.
    """
    probes = _as_table(annotation)
    chrom = probes["chr"]

    is_i = probes["type"] == ProbeType.TYPE_I.value
    is_ig = (is_i & (probes["dye"] == Channel.GREEN.value)).to_numpy()
    is_ir = (is_i & (probes["dye"] == Channel.RED.value)).to_numpy()
    is_ii = (probes["type"] == ProbeType.TYPE_II.value).to_numpy()
    is_genomic = chrom.notna().to_numpy()
    is_x = (is_genomic & (chrom == "chrX")).to_numpy()
    is_y = (is_genomic & (chrom == "chrY")).to_numpy()
    is_sex = is_x | is_y
    is_autosomal = is_genomic & ~is_sex
    is_not_y = is_genomic & ~is_y

    is_m = (probes["target"] == SignalRole.METHYLATED.value).to_numpy()
    is_u = (probes["target"] == SignalRole.UNMETHYLATED.value).to_numpy()
    names = probes["name"].to_numpy()

    def subset(mask: np.ndarray) -> Dict[str, List[str]]:
        return {"M": list(names[is_m & mask]), "U": list(names[is_u & mask])}

    return {
        "genomic.iG": subset(is_ig & is_genomic),
        "genomic.iR": subset(is_ir & is_genomic),
        "genomic.ii": subset(is_ii & is_genomic),
        "autosomal.iG": subset(is_ig & is_autosomal),
        "autosomal.iR": subset(is_ir & is_autosomal),
        "autosomal.ii": subset(is_ii & is_autosomal),
        "not.y.iG": subset(is_ig & is_not_y),
        "not.y.iR": subset(is_ir & is_not_y),
        "not.y.ii": subset(is_ii & is_not_y),
        "sex": subset(is_sex),
        "chry": subset(is_y),
        "chrx": subset(is_x),
    }


def applicable_probe_subsets(sex: str, both_sexes: bool) -> List[str]:
    """
    Names of the subsets whose normalized quantiles a sample carries.

    Parameters
    ----------
    sex : {"M", "F"}
        Resolved sex of the sample.
    both_sexes : bool
        Whether the dataset was normalized with sex-stratified designs.

    Raises
    ------
    InvalidSexLabelError
        For any other sex label.
    """
    try:
        return list(_APPLICABLE_SUBSETS[(bool(both_sexes), sex)])
    except KeyError:
        raise InvalidSexLabelError(
            f"No probe subsets defined for sex={sex!r}, both_sexes={both_sexes}"
        ) from None


class AnnotationRegistry:
    """
    Registry of probe annotations keyed by array identifier.

    Tables may be registered directly or through a loader that is called the
    first time the array is requested and cached for the lifetime of the
    registry. A registry instance is passed explicitly to whatever needs it.
    """

    def __init__(self) -> None:
        self._annotations: Dict[str, ProbeAnnotation] = {}
        self._loaders: Dict[str, Callable[[], Union[pd.DataFrame, ProbeAnnotation]]] = {}
        self._featuresets: Dict[str, pd.DataFrame] = {}
        self._lock = RLock()

    def register(
        self, array_id: str, annotation: Union[ProbeAnnotation, pd.DataFrame]
    ) -> ProbeAnnotation:
        if not isinstance(annotation, ProbeAnnotation):
            annotation = ProbeAnnotation(annotation, array_id=array_id)
        with self._lock:
            self._annotations[array_id] = annotation
        logger.debug(f"Registered annotation {array_id!r} ({len(annotation)} rows)")
        return annotation

    def register_loader(
        self,
        array_id: str,
        loader: Callable[[], Union[pd.DataFrame, ProbeAnnotation]],
    ) -> None:
        with self._lock:
            self._loaders[array_id] = loader

    def available(self) -> List[str]:
        with self._lock:
            return sorted(set(self._annotations) | set(self._loaders))

    def get(self, array_id: str) -> ProbeAnnotation:
        """
        Return the annotation for ``array_id``, running its loader on first use.

        Raises
        ------
        KeyError
            If nothing is registered under ``array_id``.
        """
        with self._lock:
            if array_id in self._annotations:
                return self._annotations[array_id]
            if array_id not in self._loaders:
                raise KeyError(
                    f"No annotation registered for {array_id!r}. "
                    f"Available: {self.available()}"
                )
            logger.info(f"Loading probe annotation {array_id!r}")
            return self.register(array_id, self._loaders[array_id]())

    def featureset(self, array_id: str) -> pd.DataFrame:
        """(type, target, name) triples of a registered featureset or array."""
        with self._lock:
            if array_id in self._featuresets:
                return self._featuresets[array_id]
        return self.get(array_id).featureset()

    def add_common(self, name: str, first: str, second: str) -> pd.DataFrame:
        """
        Register the featureset shared by two arrays under ``name``.

        Features are matched on (type, target, name); the result keeps the
        order of ``first``.
        """
        fs1 = self.featureset(first)
        fs2 = self.featureset(second)
        keys = ["type", "target", "name"]
        common = fs1.merge(fs2[keys].drop_duplicates(), on=keys, how="inner")
        with self._lock:
            self._featuresets[name] = common
        logger.info(
            f"Common featureset {name!r}: {len(common)} of {len(fs1)} ({first}) "
            f"and {len(fs2)} ({second}) features"
        )
        return common
