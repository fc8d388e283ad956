"""
Input hashing and metadata sidecars for reproducibility.

Every output written by a pipeline step gets a <stem>_metadata.json sidecar
with the hashes of its inputs and configs, the git commit, library versions,
the run id and the step parameters. Step 00 uses the sidecars to skip states
whose street inputs and street feature parameters are unchanged.
"""

import hashlib
import json
import subprocess
import sys
from datetime import datetime, timezone
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any

from garden_city.paths import get_project_root


# Distributions recorded in every sidecar
TRACKED_LIBRARIES = [
    "pandas",
    "numpy",
    "geopandas",
    "shapely",
    "pyarrow",
    "scipy",
    "scikit-learn",
    "statsmodels",
    "pyfixest",
    "networkx",
]

# Files that travel with a .shp and change its content
SHAPEFILE_PARTS = (".shx", ".dbf", ".prj", ".cpg")


def hash_file(file_path: Path | str, algorithm: str = "sha256") -> str:
    """
    Compute the hash of a file, reading it in chunks.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {file_path}")

    hasher = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            hasher.update(chunk)

    return hasher.hexdigest()


def hash_dict(data: dict, algorithm: str = "sha256") -> str:
    """Hash a dictionary by its JSON serialization with sorted keys."""
    content = json.dumps(data, sort_keys=True, default=str)
    hasher = hashlib.new(algorithm)
    hasher.update(content.encode("utf-8"))
    return hasher.hexdigest()


def dataset_files(path: Path | str) -> list[Path]:
    """A data file plus, for a shapefile, its existing companion files."""
    path = Path(path)
    if path.suffix.lower() != ".shp":
        return [path]
    companions = [path.with_suffix(ext) for ext in SHAPEFILE_PARTS]
    return [path] + [p for p in companions if p.exists()]


def hash_config(config_path: Path | str) -> str:
    """
    Hash a YAML or JSON config by content rather than formatting.

    Comments and key order do not change the digest; any other file type is
    hashed byte-for-byte.
    """
    config_path = Path(config_path)

    if config_path.suffix in (".yml", ".yaml"):
        import yaml
        with open(config_path, "r", encoding="utf-8") as f:
            return hash_dict(yaml.safe_load(f) or {})
    if config_path.suffix == ".json":
        with open(config_path, "r", encoding="utf-8") as f:
            return hash_dict(json.load(f))
    return hash_file(config_path)


def _git(*args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            cwd=get_project_root(),
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def get_code_version() -> dict[str, Any]:
    """Git commit (short) and dirty flag; None outside a git checkout."""
    commit = _git("rev-parse", "--short=8", "HEAD")
    status = _git("status", "--porcelain")
    return {
        "git_commit": commit,
        "git_dirty": None if status is None else len(status) > 0,
    }


def get_library_versions() -> dict[str, str]:
    """Installed versions of the tracked distributions."""
    versions = {"python": sys.version.split()[0]}
    for dist in TRACKED_LIBRARIES:
        try:
            versions[dist] = importlib_metadata.version(dist)
        except importlib_metadata.PackageNotFoundError:
            versions[dist] = "not installed"
    return versions


def create_metadata_sidecar(
    output_path: Path | str,
    run_id: str,
    input_files: list[Path | str] | None = None,
    config_files: list[Path | str] | None = None,
    parameters: dict[str, Any] | None = None,
    row_count: int | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Build the metadata dictionary for an output file.

    Input and config hashes are keyed by file name; missing files are skipped.
    """
    output_path = Path(output_path)

    metadata = {
        "output_file": output_path.name,
        "output_path": str(output_path),
        "run_id": run_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "code_version": get_code_version(),
        "library_versions": get_library_versions(),
    }

    if input_files:
        metadata["input_file_hashes"] = {
            Path(f).name: hash_file(f) for f in input_files if Path(f).exists()
        }

    if config_files:
        metadata["config_hashes"] = {
            Path(f).name: hash_config(f) for f in config_files if Path(f).exists()
        }

    if parameters:
        metadata["parameters"] = parameters

    if row_count is not None:
        metadata["row_count"] = row_count

    if output_path.exists():
        metadata["output_hash"] = hash_file(output_path)

    if extra:
        metadata["extra"] = extra

    return metadata


def sidecar_path_for(output_path: Path | str) -> Path:
    output_path = Path(output_path)
    return output_path.parent / f"{output_path.stem}_metadata.json"


def write_metadata_sidecar(
    output_path: Path | str,
    run_id: str,
    input_files: list[Path | str] | None = None,
    config_files: list[Path | str] | None = None,
    parameters: dict[str, Any] | None = None,
    row_count: int | None = None,
    extra: dict[str, Any] | None = None,
) -> Path:
    """
    Write <stem>_metadata.json next to an output.

    Returns:
        Path to the written metadata file.
    """
    metadata = create_metadata_sidecar(
        output_path=output_path,
        run_id=run_id,
        input_files=input_files,
        config_files=config_files,
        parameters=parameters,
        row_count=row_count,
        extra=extra,
    )

    # Imported here to avoid a circular import through io_utils
    from garden_city.io_utils import atomic_write_json

    sidecar = sidecar_path_for(output_path)
    atomic_write_json(sidecar, metadata)
    return sidecar


def check_hashes_match(
    metadata_path: Path | str,
    input_files: list[Path | str] | None = None,
    config_files: list[Path | str] | None = None,
    parameters: dict[str, Any] | None = None,
) -> bool:
    """
    Check whether current input/config hashes match a metadata sidecar.

    When `parameters` is given it must equal the parameters stored in the
    sidecar. Returns False when the sidecar is missing, an input is missing,
    or any digest differs.
    """
    metadata_path = Path(metadata_path)
    if not metadata_path.exists():
        return False

    with open(metadata_path, "r", encoding="utf-8") as f:
        metadata = json.load(f)

    checks = [
        (input_files, metadata.get("input_file_hashes", {}), hash_file),
        (config_files, metadata.get("config_hashes", {}), hash_config),
    ]
    for files, stored, hasher in checks:
        for f in files or []:
            f = Path(f)
            if not f.exists() or stored.get(f.name) != hasher(f):
                return False

    if parameters is not None and hash_dict(metadata.get("parameters") or {}) != hash_dict(parameters):
        return False

    return True
