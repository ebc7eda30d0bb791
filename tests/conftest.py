#!/usr/bin/env python
# coding: utf-8


"""
Shared fixtures: a small synthetic array annotation and real IDAT files
written for synthetic male and female samples.
"""


import gzip
import struct
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from funnorm.config.config_manager import reset_config
from funnorm.io.annotation import ProbeAnnotation, build_probe_table

CONTROL_GROUPS = [
    ("NORM_A", [f"Norm_A{i}" for i in range(4)]),
    ("NORM_T", [f"Norm_T{i}" for i in range(4)]),
    ("NORM_C", [f"Norm_C{i}" for i in range(4)]),
    ("NORM_G", [f"Norm_G{i}" for i in range(4)]),
    ("NEGATIVE", [f"Negative {i}" for i in range(12)]),
    ("STAINING", ["Biotin (High)", "DNP (High)"]),
    ("EXTENSION", ["Extension (A)", "Extension (T)", "Extension (C)", "Extension (G)"]),
    ("HYBRIDIZATION", ["Hyb (Low)", "Hyb (Medium)", "Hyb (High)"]),
    ("TARGET REMOVAL", ["Target Removal 1", "Target Removal 2"]),
    ("NON-POLYMORPHIC", ["NP (A)", "NP (T)", "NP (C)", "NP (G)"]),
    ("SPECIFICITY I", [f"GT Mismatch {i} (PM)" for i in range(1, 7)]),
    ("SPECIFICITY II", ["Specificity 1", "Specificity 2", "Specificity 3"]),
    (
        "BISULFITE CONVERSION I",
        ["BS Conversion I C1", "BS Conversion I-C2", "BS Conversion I-C3"]
        + [f"BS Conversion I-C{i}" for i in (4, 5, 6)],
    ),
    ("BISULFITE CONVERSION II", [f"BS Conversion II-{i}" for i in range(1, 5)]),
]

CHROMOSOMES = ["chr1", "chr2", "chr3", "chrX", "chrY"]


def make_manifest(n_type1=40, n_type2=80, n_snps=2):
    """Manifest-style frames and genomic locations of a synthetic array."""
    address = iter(range(10_000, 1_000_000))

    def type1(prefix, n):
        names = [f"cg{prefix}{i:05d}" for i in range(n)]
        return pd.DataFrame(
            {
                "Name": names,
                "AddressA": [next(address) for _ in names],
                "AddressB": [next(address) for _ in names],
            }
        )

    type1_red = type1("1", n_type1)
    type1_green = type1("2", n_type1)
    names2 = [f"cg3{i:05d}" for i in range(n_type2)] + [f"rs{i}" for i in range(n_snps)]
    type2 = pd.DataFrame({"Name": names2, "AddressA": [next(address) for _ in names2]})

    rows = [(t, ext) for t, exts in CONTROL_GROUPS for ext in exts]
    controls = pd.DataFrame(
        {
            "Address": [next(address) for _ in rows],
            "Type": [t for t, _ in rows],
            "ExtendedType": [e for _, e in rows],
        }
    )

    cpg = pd.concat([type1_red["Name"], type1_green["Name"], type2["Name"]])
    cpg = cpg[cpg.str.startswith("cg")].reset_index(drop=True)
    locations = pd.DataFrame(
        {
            "chr": [CHROMOSOMES[i % len(CHROMOSOMES)] for i in range(len(cpg))],
            "pos": np.arange(len(cpg)) * 100 + 1,
        },
        index=cpg.values,
    )
    return type1_red, type1_green, type2, controls, locations


def make_annotation(**kwargs) -> ProbeAnnotation:
    return ProbeAnnotation(build_probe_table(*make_manifest(**kwargs)), array_id="synthetic")


def _idat_string(text):
    raw = text.encode("ascii")
    return struct.pack("<B", len(raw)) + raw


def write_idat(path, addresses, means, nbeads, sds=None):
    """Write a version-3 IDAT file (gzip-compressed if ``path`` ends in .gz)."""
    addresses = np.asarray(addresses, dtype="<i4")
    n = len(addresses)
    means = np.clip(np.round(means), 0, 65535).astype("<u2")
    nbeads = np.clip(nbeads, 0, 255).astype("u1")
    sds = np.zeros(n, dtype="<u2") if sds is None else np.asarray(sds, dtype="<u2")

    run_info = struct.pack("<i", 1) + b"".join(
        _idat_string(s) for s in ("1/1/2020 1:00:00 PM", "Scan", "", "", "1.0")
    )
    payloads = [
        (1000, struct.pack("<i", n)),
        (102, addresses.tobytes()),
        (103, sds.tobytes()),
        (104, means.tobytes()),
        (107, nbeads.tobytes()),
        (200, struct.pack("<i", n) + addresses.tobytes()),
        (300, run_info),
        (400, struct.pack("<i", 0)),
        (401, _idat_string("")),
        (402, _idat_string("200000000000")),
        (403, _idat_string("BeadChip 8x5")),
        (404, _idat_string("R01C01")),
        (405, _idat_string("")),
        (406, _idat_string("")),
        (407, _idat_string("")),
        (408, _idat_string("")),
        (409, _idat_string("")),
        (410, _idat_string("")),
        (510, _idat_string("")),
    ]
    offset = 4 + 8 + 4 + 10 * len(payloads)
    header = b"IDAT" + struct.pack("<q", 3) + struct.pack("<i", len(payloads))
    body = b""
    for code, payload in payloads:
        header += struct.pack("<Hq", code, offset + len(body))
        body += payload

    data = header + body
    path = Path(path)
    if path.suffix == ".gz":
        with gzip.open(path, "wb") as fh:
            fh.write(data)
    else:
        path.write_bytes(data)
    return path


def make_channels(annotation: ProbeAnnotation, seed=0, sex="M", low_beads=()):
    """Synthetic raw intensities of one sample as {dye: DataFrame[Mean, NBeads]}."""
    rng = np.random.RandomState(seed)
    table = annotation.table
    addresses = np.sort(table["address"].unique())
    mean = {
        dye: pd.Series(rng.normal(400, 80, len(addresses)).clip(50), index=addresses)
        for dye in ("R", "G")
    }

    chrom = table.drop_duplicates("name").set_index("name")["chr"]
    names = table.loc[table["target"].isin(["M", "U", "MG", "UG"]), "name"].unique()
    for name in names:
        total = rng.uniform(6000, 12000)
        if chrom.get(name) == "chrY" and sex == "F":
            total = rng.uniform(100, 300)
        beta = rng.uniform(0.05, 0.95)
        level = {"M": beta * total, "U": (1 - beta) * total}
        rows = table[(table["name"] == name) & table["target"].isin(["M", "U", "MG", "UG"])]
        for _, row in rows.iterrows():
            mean[row["dye"]][row["address"]] = level[row["target"][0]]

    controls = table[table["type"] == "control"].drop_duplicates("address")
    for _, row in controls.iterrows():
        for dye in ("R", "G"):
            if row["target"] == "NEGATIVE":
                mean[dye][row["address"]] = rng.normal(300, 40)
            else:
                mean[dye][row["address"]] = rng.uniform(2000, 9000)

    beads = pd.Series(rng.randint(6, 20, len(addresses)), index=addresses)
    for address in low_beads:
        beads[address] = 1

    return {
        dye: pd.DataFrame({"Mean": mean[dye].round(), "NBeads": beads}) for dye in ("R", "G")
    }


def write_sample(directory, basename, annotation, seed=0, sex="M", gz=False, low_beads=()):
    """Write both channel files of a synthetic sample and return its basename path."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    channels = make_channels(annotation, seed=seed, sex=sex, low_beads=low_beads)
    ext = ".idat.gz" if gz else ".idat"
    for dye, suffix in (("G", "_Grn"), ("R", "_Red")):
        frame = channels[dye]
        write_idat(
            directory / f"{basename}{suffix}{ext}",
            frame.index.to_numpy(),
            frame["Mean"].to_numpy(),
            frame["NBeads"].to_numpy(),
        )
    return str(directory / basename)


@pytest.fixture(autouse=True)
def _fresh_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


@pytest.fixture(scope="session")
def annotation():
    return make_annotation()


@pytest.fixture
def male_basename(tmp_path, annotation):
    return write_sample(tmp_path / "idat", "S1_R01C01", annotation, seed=1, sex="M")


@pytest.fixture
def female_basename(tmp_path, annotation):
    return write_sample(tmp_path / "idat", "S2_R02C01", annotation, seed=2, sex="F")
