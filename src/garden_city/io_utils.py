"""
Atomic writes and readers for pipeline inputs and outputs.

Outputs are written to a temporary file in the target directory and then
renamed into place, so a failed step never leaves a half-written table.
Leftover .tmp files mark failed writes.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, TYPE_CHECKING

if TYPE_CHECKING:
    import pandas as pd

from garden_city.paths import ensure_dir


def atomic_write(
    target_path: Path | str,
    write_func: Callable,
    *args,
    **kwargs
) -> Path:
    """
    Write to a file atomically using a temporary file and rename.

    Args:
        target_path: Final destination path.
        write_func: Called as write_func(temp_path, *args, **kwargs).

    Returns:
        The target path.

    Raises:
        Exception: Re-raises any exception from write_func after cleanup.
    """
    target_path = Path(target_path)
    ensure_dir(target_path.parent)

    temp_fd, temp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=f"{target_path.stem}_",
        dir=target_path.parent,
    )
    temp_path = Path(temp_path)

    try:
        os.close(temp_fd)
        write_func(temp_path, *args, **kwargs)
        temp_path.replace(target_path)
        return target_path

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_write_json(target_path: Path | str, data: Any, indent: int = 2) -> Path:
    def write_json(temp_path: Path, data: Any, indent: int):
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, default=str)

    return atomic_write(target_path, write_json, data, indent)


def atomic_write_text(target_path: Path | str, content: str) -> Path:
    def write_text(temp_path: Path, content: str):
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(content)

    return atomic_write(target_path, write_text, content)


def atomic_write_parquet(
    target_path: Path | str,
    df: "pd.DataFrame",
    **kwargs
) -> Path:
    """
    Write a DataFrame to Parquet atomically via pyarrow.
    """
    import pyarrow as pa
    import pyarrow.parquet as pq

    def write_parquet(temp_path: Path, df: "pd.DataFrame", **kwargs):
        table = pa.Table.from_pandas(df, preserve_index=False)
        pq.write_table(table, temp_path, **kwargs)

    return atomic_write(target_path, write_parquet, df, **kwargs)


def atomic_write_csv(target_path: Path | str, df: "pd.DataFrame") -> Path:
    """Write a DataFrame to CSV atomically (no index column)."""
    def write_csv(temp_path: Path, df: "pd.DataFrame"):
        df.to_csv(temp_path, index=False)

    return atomic_write(target_path, write_csv, df)


def atomic_write_stata(target_path: Path | str, df: "pd.DataFrame") -> Path:
    """
    Write a DataFrame to a Stata .dta file atomically.

    Object columns are cast to str (Stata has no mixed-type columns) and
    column names longer than 32 characters are rejected by pandas.
    """
    import pandas as pd

    def write_stata(temp_path: Path, df: "pd.DataFrame"):
        out = df.copy()
        for col in out.columns:
            if not pd.api.types.is_numeric_dtype(out[col]):
                out[col] = out[col].astype(object).astype(str).replace({"None": "", "nan": "", "<NA>": ""})
        out.to_stata(temp_path, write_index=False, version=118)

    return atomic_write(target_path, write_stata, df)


# =============================================================================
# Read utilities
# =============================================================================

def read_parquet(file_path: Path | str) -> "pd.DataFrame":
    """
    Read a Parquet file into a DataFrame.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    import pandas as pd

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Parquet file not found: {file_path}")
    return pd.read_parquet(file_path)


def read_table(file_path: Path | str, dtype: dict | None = None) -> "pd.DataFrame":
    """
    Read a tabular input by extension (.csv, .parquet, .dta).

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the extension is not supported.
    """
    import pandas as pd

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Input table not found: {file_path}")

    suffix = file_path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(file_path, dtype=dtype, low_memory=False)
    if suffix == ".parquet":
        return pd.read_parquet(file_path)
    if suffix == ".dta":
        return pd.read_stata(file_path, convert_categoricals=False)
    raise ValueError(f"Unsupported table format: {file_path.suffix}")


def read_vector(file_path: Path | str, layer: str | None = None):
    """
    Read a shapefile / GeoPackage / GeoParquet into a GeoDataFrame.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    import geopandas as gpd

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Vector file not found: {file_path}")
    if file_path.suffix.lower() == ".parquet":
        return gpd.read_parquet(file_path)
    if layer is not None:
        return gpd.read_file(file_path, layer=layer)
    return gpd.read_file(file_path)


def read_yaml(file_path: Path | str) -> Any:
    """
    Read a YAML config file.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    import yaml

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"YAML file not found: {file_path}")
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def clean_tmp_files(directory: Path | str, pattern: str = "*.tmp") -> list[Path]:
    """
    Remove .tmp files left behind by failed atomic writes.

    Returns:
        List of removed file paths.
    """
    directory = Path(directory)
    removed = []

    if directory.exists():
        for tmp_file in directory.glob(pattern):
            tmp_file.unlink()
            removed.append(tmp_file)

    return removed
