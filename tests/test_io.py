#!/usr/bin/env python
# coding: utf-8


"""
Tests for funnorm.io readers, writers and annotations.

This suite covers:
- Basename discovery and channel file lookup (plain, gzip, upper case).
- Binary IDAT parsing and error paths.
- Probe table assembly, quantile subsets and the annotation registry.
- HDF5 matrix stores and csv/tsv export (overwrite protection, reordering).
"""


from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from conftest import make_manifest, write_idat, write_sample
from funnorm.errors import InvalidAnnotationError, InvalidSexLabelError, MissingFileError
from funnorm.io.annotation import (
    AnnotationRegistry,
    Channel,
    ProbeType,
    SignalRole,
    ProbeAnnotation,
    applicable_probe_subsets,
    build_probe_table,
    quantile_probe_subsets,
)
from funnorm.io.data_utils import MU, RGSet
from funnorm.io.readers import (
    channel_path,
    get_basenames,
    list_basenames,
    read_idat,
    read_rg,
    rg_exists,
)
from funnorm.io.writers import HDF5MatrixStore, export_matrix, retrieve_hdf5_matrix


class TestBasenames:
    """Test basename discovery"""

    def test_get_basenames_dedup(self):
        files = ["a/S1_Grn.idat", "a/S1_Red.idat", "a/S2_Red.idat.gz", "a/S2_GRN.IDAT"]
        assert get_basenames(files) == ["a/S1", "a/S2"]

    def test_list_basenames(self, tmp_path):
        for name in ("B_Grn.idat", "B_Red.idat", "A_Grn.idat.gz", "C_Red.idat", "notes.txt"):
            (tmp_path / name).write_bytes(b"")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "D_Grn.idat").write_bytes(b"")

        found = list_basenames(tmp_path)
        assert found == [str(tmp_path / "A"), str(tmp_path / "B"), str(tmp_path / "C")]
        assert str(tmp_path / "sub" / "D") in list_basenames(tmp_path, recursive=True)

    def test_list_basenames_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            list_basenames(tmp_path / "absent")

    def test_channel_path_variants(self, tmp_path):
        (tmp_path / "P_Grn.idat.gz").write_bytes(b"")
        (tmp_path / "P_RED.IDAT").write_bytes(b"")
        base = str(tmp_path / "P")
        assert channel_path(base, "G") == tmp_path / "P_Grn.idat.gz"
        assert channel_path(base, "R") == tmp_path / "P_RED.IDAT"
        assert rg_exists(base)
        assert not rg_exists(str(tmp_path / "Q"))


class TestReadIdat:
    """Test binary IDAT parsing"""

    @pytest.mark.parametrize("name", ["x_Grn.idat", "x_Grn.idat.gz"])
    def test_round_values(self, tmp_path, name):
        path = write_idat(tmp_path / name, [10, 20, 30], [100.0, 65535.0, 0.0], [3, 4, 5],
                          sds=[1, 2, 3])
        frame = read_idat(path)
        assert list(frame.index) == [10, 20, 30]
        assert frame.index.name == "address"
        assert list(frame["Mean"]) == [100.0, 65535.0, 0.0]
        assert list(frame["NBeads"]) == [3, 4, 5]
        assert list(frame["SD"]) == [1.0, 2.0, 3.0]

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingFileError):
            read_idat(tmp_path / "absent_Grn.idat")

    def test_not_an_idat(self, tmp_path):
        path = tmp_path / "bad_Grn.idat"
        path.write_bytes(b"NOPE" + bytes(20))
        with pytest.raises(ValueError, match="(?i)not an IDAT"):
            read_idat(path)


class TestReadRg:
    """Test reading both channels of a sample"""

    def test_restricted_to_annotation(self, annotation, male_basename):
        rg = read_rg(male_basename, annotation)
        assert set(rg.R.index) == set(annotation.addresses("R"))
        assert set(rg.G.index) == set(annotation.addresses("G"))
        assert rg.basename == male_basename

    def test_missing_channel(self, tmp_path, annotation):
        base = write_sample(tmp_path, "S9", annotation)
        Path(base + "_Red.idat").unlink()
        with pytest.raises(MissingFileError, match="_Red.idat"):
            read_rg(base, annotation)

    def test_annotation_address_absent(self, tmp_path, annotation):
        write_idat(tmp_path / "T_Grn.idat", [1, 2], [1.0, 2.0], [5, 5])
        write_idat(tmp_path / "T_Red.idat", [1, 2], [1.0, 2.0], [5, 5])
        with pytest.raises(InvalidAnnotationError, match="absent"):
            read_rg(str(tmp_path / "T"), annotation)

    def test_custom_reader(self, annotation, male_basename):
        calls = []

        def reader(path):
            calls.append(Path(path).name)
            return read_idat(path)

        read_rg(male_basename, annotation, reader=reader)
        assert sorted(calls) == ["S1_R01C01_Grn.idat", "S1_R01C01_Red.idat"]


class TestDataUtils:
    """Test signal containers"""

    def test_mu_aligns_unmethylated(self):
        mu = MU(M=pd.Series([1, 2], index=["a", "b"]), U=pd.Series([5.0, 4.0], index=["b", "a"]))
        assert list(mu.U) == [4.0, 5.0]
        assert list(mu.subset(["b", "z"]).M.fillna(-1)) == [2.0, -1.0]
        assert list(mu["U"]) == [4.0, 5.0]
        with pytest.raises(KeyError):
            mu["B"]

    def test_rgset_requires_columns(self):
        with pytest.raises(ValueError, match="NBeads"):
            RGSet(R=pd.DataFrame({"Mean": [1.0]}), G=pd.DataFrame({"Mean": [1.0]}))


class TestAnnotation:
    """Test probe tables and subsets"""

    def test_probe_table_roles(self, annotation):
        table = annotation.table
        type2 = table[table["type"] == "ii"]
        assert set(type2.loc[type2["target"] == "M", "dye"]) == {"G"}
        assert set(type2.loc[type2["target"] == "U", "dye"]) == {"R"}
        assert set(table.loc[table["name"].astype(str).str.startswith("rs"), "target"]) == {
            "MG", "UG"
        }
        # out-of-band rows are read from the opposite channel
        red = table[(table["type"] == "i") & (table["dye"] == "R") & (table["target"] == "M")]
        oob_g = set(table.loc[(table["target"] == "OOB") & (table["dye"] == "G"), "address"])
        assert set(red["address"]) <= oob_g

    def test_codes_match_enumerations(self, annotation):
        table = annotation.table
        assert set(table["type"]) == {t.value for t in ProbeType}
        assert set(table["dye"]) == {c.value for c in Channel}
        roles = {r.value for r in SignalRole}
        assert roles <= set(table["target"])
        np.testing.assert_array_equal(
            annotation.addresses(Channel.RED, [SignalRole.OUT_OF_BAND], [ProbeType.TYPE_I]),
            annotation.addresses("R", ["OOB"], ["i"]),
        )

    def test_probe_names_exclude_genotyping(self, annotation):
        names = annotation.probe_names
        assert len(names) == 160
        assert not any(n.startswith("rs") for n in names)

    def test_subsets(self, annotation):
        subsets = quantile_probe_subsets(annotation)
        table = annotation.table.set_index("name")
        assert len(subsets) == 12
        for name in subsets["chry"]["M"]:
            assert table.loc[name, "chr"].iloc[0] == "chrY"
        autosomal = set(subsets["autosomal.ii"]["M"])
        assert autosomal < set(subsets["not.y.ii"]["M"]) < set(subsets["genomic.ii"]["M"])
        assert set(subsets["sex"]["U"]) == set(subsets["chrx"]["U"]) | set(subsets["chry"]["U"])

    def test_missing_location_excluded(self):
        type1_red, type1_green, type2, controls, _ = make_manifest(n_type1=5, n_type2=5)
        annotation = ProbeAnnotation(build_probe_table(type1_red, type1_green, type2, controls))
        assert all(
            not subset["M"] for subset in annotation.quantile_probe_subsets.values()
        )

    def test_invalid_manifest(self):
        type1_red, type1_green, type2, controls, _ = make_manifest(n_type1=5, n_type2=5)
        with pytest.raises(InvalidAnnotationError, match="AddressB"):
            build_probe_table(type1_red.drop(columns="AddressB"), type1_green, type2, controls)
        with pytest.raises(InvalidAnnotationError, match="missing columns"):
            ProbeAnnotation(pd.DataFrame({"type": ["i"]}))

    def test_applicable_subsets(self):
        assert applicable_probe_subsets("M", True) == [
            "autosomal.iG", "autosomal.iR", "autosomal.ii", "sex"
        ]
        assert applicable_probe_subsets("F", False)[-1] == "chry"
        with pytest.raises(InvalidSexLabelError):
            applicable_probe_subsets("X", True)


class TestAnnotationRegistry:
    """Test the annotation registry"""

    def test_loader_runs_once(self, annotation):
        calls = []

        def loader():
            calls.append(1)
            return annotation.table

        registry = AnnotationRegistry()
        registry.register_loader("synthetic", loader)
        first = registry.get("synthetic")
        assert registry.get("synthetic") is first
        assert calls == [1]
        assert registry.available() == ["synthetic"]

    def test_unknown_array(self):
        with pytest.raises(KeyError, match="No annotation registered"):
            AnnotationRegistry().get("absent")

    def test_add_common(self, annotation):
        smaller = ProbeAnnotation(build_probe_table(*make_manifest(n_type1=10, n_type2=20)))
        registry = AnnotationRegistry()
        registry.register("large", annotation)
        registry.register("small", smaller)

        common = registry.add_common("shared", "large", "small")
        assert len(common) == len(smaller.featureset())
        pd.testing.assert_frame_equal(registry.featureset("shared"), common)


class TestHDF5Store:
    """Test on-disk matrix storage"""

    def make_store(self, path):
        store = HDF5MatrixStore.create(path, ["r1", "r2", "r3"], ["s1", "s2", "s3", "s4"])
        store.write_columns(0, np.arange(6, dtype=float).reshape(3, 2))
        store.write_columns(2, np.array([10.0, 11.0, 12.0]))
        return store

    def test_write_and_read(self, tmp_path):
        store = self.make_store(tmp_path / "m.h5")
        assert store.shape == (3, 4)
        frame = retrieve_hdf5_matrix(store.path)
        assert list(frame.columns) == ["s1", "s2", "s3", "s4"]
        assert frame.loc["r2", "s2"] == 3.0
        assert frame.loc["r3", "s3"] == 12.0
        assert frame["s4"].isna().all()

    def test_subset_in_requested_order(self, tmp_path):
        store = self.make_store(tmp_path / "m.h5")
        frame = store.read(sites=["r3", "r1", "r3"], samples=["s3", "s1"])
        assert list(frame.index) == ["r3", "r1", "r3"]
        np.testing.assert_array_equal(frame.to_numpy(), [[12.0, 4.0], [10.0, 0.0], [12.0, 4.0]])

    def test_unknown_names(self, tmp_path):
        store = self.make_store(tmp_path / "m.h5")
        with pytest.raises(KeyError, match="samples"):
            store.read(samples=["s9"])

    def test_block_validation(self, tmp_path):
        store = self.make_store(tmp_path / "m.h5")
        with pytest.raises(ValueError, match="rows"):
            store.write_columns(0, np.ones((2, 1)))
        with pytest.raises(IndexError):
            store.write_columns(3, np.ones((3, 2)))

    def test_overwrite_protection(self, tmp_path):
        path = tmp_path / "m.h5"
        self.make_store(path)
        with pytest.raises(FileExistsError):
            HDF5MatrixStore.create(path, ["r"], ["s"], overwrite=False)


class TestExport:
    """Test csv/tsv export"""

    def test_csv_and_tsv(self, tmp_path):
        matrix = pd.DataFrame({"s1": [0.1, 0.2]}, index=["cg1", "cg2"])
        csv = export_matrix(matrix, tmp_path / "out" / "beta.csv")
        tsv = export_matrix(matrix, tmp_path / "beta.tsv")
        pd.testing.assert_frame_equal(pd.read_csv(csv, index_col=0), matrix)
        pd.testing.assert_frame_equal(pd.read_csv(tsv, sep="\t", index_col=0), matrix)

    def test_overwrite_and_format(self, tmp_path):
        matrix = pd.DataFrame({"s1": [0.1]}, index=["cg1"])
        path = export_matrix(matrix, tmp_path / "beta.csv")
        with pytest.raises(FileExistsError):
            export_matrix(matrix, path, overwrite=False)
        with pytest.raises(ValueError, match="Unsupported format"):
            export_matrix(matrix, tmp_path / "beta.xlsx")
