"""
Tests for garden_city.io_utils and garden_city.hashing modules.

Tests cover:
- Atomic writers leave no temporary files behind
- Table readers by extension
- Metadata sidecars and hash-based skipping
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import json

import pytest
import pandas as pd
import numpy as np

from garden_city.io_utils import (
    atomic_write,
    atomic_write_csv,
    atomic_write_json,
    atomic_write_parquet,
    atomic_write_stata,
    clean_tmp_files,
    read_parquet,
    read_table,
    read_yaml,
)
from garden_city.hashing import (
    check_hashes_match,
    hash_config,
    hash_dict,
    hash_file,
    sidecar_path_for,
    write_metadata_sidecar,
)


@pytest.fixture
def sample_df():
    return pd.DataFrame({
        "ft_blc_state": ["010010201001_AL", "010010201002_AL"],
        "garden_metric_osm": [0.25, np.nan],
        "metro": ["M1", None],
    })


class TestAtomicWrites:
    """Tests for atomic writers."""

    def test_parquet_round_trip(self, tmp_path, sample_df):
        path = atomic_write_parquet(tmp_path / "out" / "t.parquet", sample_df)
        assert path.exists()
        pd.testing.assert_frame_equal(read_parquet(path), sample_df, check_dtype=False)
        assert not list(path.parent.glob("*.tmp"))

    def test_csv_has_no_index(self, tmp_path, sample_df):
        path = atomic_write_csv(tmp_path / "t.csv", sample_df)
        assert list(pd.read_csv(path).columns) == list(sample_df.columns)

    def test_stata_blanks_missing_strings(self, tmp_path, sample_df):
        path = atomic_write_stata(tmp_path / "t.dta", sample_df)
        back = read_table(path)
        assert back["metro"].tolist() == ["M1", ""]
        assert np.isnan(back["garden_metric_osm"].iloc[1])

    def test_json_serializes_paths(self, tmp_path):
        path = atomic_write_json(tmp_path / "d.json", {"input": tmp_path / "x.csv", "n": 3})
        data = json.loads(path.read_text())
        assert data == {"input": str(tmp_path / "x.csv"), "n": 3}

    def test_failed_write_cleans_up(self, tmp_path):
        def broken(temp_path):
            temp_path.write_text("partial")
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError, match="disk full"):
            atomic_write(tmp_path / "t.txt", broken)
        assert not (tmp_path / "t.txt").exists()
        assert not list(tmp_path.glob("*.tmp"))

    def test_clean_tmp_files(self, tmp_path):
        (tmp_path / "a_x.tmp").write_text("")
        (tmp_path / "keep.csv").write_text("")
        removed = clean_tmp_files(tmp_path)
        assert [p.name for p in removed] == ["a_x.tmp"]
        assert (tmp_path / "keep.csv").exists()


class TestReaders:
    """Tests for table readers."""

    def test_read_csv_with_dtype(self, tmp_path):
        path = tmp_path / "t.csv"
        path.write_text("GEOID,v\n010010201001,1.5\n")
        df = read_table(path, dtype={"GEOID": str})
        assert df["GEOID"].iloc[0] == "010010201001"

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "t.xlsx"
        path.write_text("")
        with pytest.raises(ValueError, match="Unsupported"):
            read_table(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_table(tmp_path / "missing.csv")
        with pytest.raises(FileNotFoundError):
            read_yaml(tmp_path / "missing.yml")


class TestHashing:
    """Tests for hashes and sidecars."""

    def test_hash_file_changes_with_content(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("one")
        first = hash_file(path)
        path.write_text("two")
        assert hash_file(path) != first

    def test_hash_dict_ignores_key_order(self):
        assert hash_dict({"a": 1, "b": 2}) == hash_dict({"b": 2, "a": 1})

    def test_hash_config_ignores_comments(self, tmp_path):
        a = tmp_path / "a.yml"
        b = tmp_path / "b.yml"
        a.write_text("x: 1\n")
        b.write_text("# comment\nx: 1\n")
        assert hash_config(a) == hash_config(b)

    def test_sidecar_contents(self, tmp_path, sample_df):
        out = atomic_write_parquet(tmp_path / "t.parquet", sample_df)
        inp = tmp_path / "in.csv"
        inp.write_text("a\n1\n")

        sidecar = write_metadata_sidecar(out, run_id="run1", input_files=[inp],
                                         parameters={"k": 1}, row_count=2)
        assert sidecar == sidecar_path_for(out) == tmp_path / "t_metadata.json"

        meta = json.loads(sidecar.read_text())
        assert meta["run_id"] == "run1"
        assert meta["row_count"] == 2
        assert meta["input_file_hashes"]["in.csv"] == hash_file(inp)
        assert "pandas" in meta["library_versions"]

    def test_check_hashes_match(self, tmp_path, sample_df):
        out = atomic_write_parquet(tmp_path / "t.parquet", sample_df)
        inp = tmp_path / "in.csv"
        inp.write_text("a\n1\n")
        sidecar = write_metadata_sidecar(out, run_id="run1", input_files=[inp])

        assert check_hashes_match(sidecar, input_files=[inp])
        inp.write_text("a\n2\n")
        assert not check_hashes_match(sidecar, input_files=[inp])
        assert not check_hashes_match(tmp_path / "none.json", input_files=[inp])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
