"""
Canonical root detection and path resolution.

Every script resolves its inputs and outputs through garden_city.paths;
nothing in the pipeline builds relative ../ paths.

The .project-root file marks the repository root.
"""

from pathlib import Path
from typing import Union

# Cached project root
_PROJECT_ROOT: Path | None = None


def get_project_root() -> Path:
    """
    Find and return the project root directory.

    Walks upward from this file until a directory containing the
    .project-root marker is found. The result is cached.

    Returns:
        Path to the project root directory.

    Raises:
        FileNotFoundError: If .project-root marker is not found.
    """
    global _PROJECT_ROOT

    if _PROJECT_ROOT is not None:
        return _PROJECT_ROOT

    current = Path(__file__).resolve().parent

    for _ in range(10):
        if (current / ".project-root").exists():
            _PROJECT_ROOT = current
            return _PROJECT_ROOT

        if current.parent == current:
            break
        current = current.parent

    raise FileNotFoundError(
        "Could not find .project-root marker. "
        "Run the pipeline from a checkout of the Garden City Design repository."
    )


def get_path(*parts: str) -> Path:
    """
    Resolve a path relative to the project root.

    Example:
        >>> get_path("data", "processed", "index")
        PosixPath('/path/to/project/data/processed/index')
    """
    return get_project_root() / Path(*parts)


def resolve_source_path(relative: str | Path) -> Path:
    """Resolve a path listed in configs/sources.yml against the project root."""
    relative = Path(relative)
    if relative.is_absolute():
        return relative
    return get_project_root() / relative


# =============================================================================
# Canonical path constants
# =============================================================================

class Paths:
    """
    Canonical locations for configs, data stages, logs and reports.
    """

    @property
    def root(self) -> Path:
        """Project root directory."""
        return get_project_root()

    # -------------------------------------------------------------------------
    # Configs
    # -------------------------------------------------------------------------
    @property
    def configs(self) -> Path:
        return get_path("configs")

    @property
    def params_yml(self) -> Path:
        return get_path("configs", "params.yml")

    @property
    def sources_yml(self) -> Path:
        return get_path("configs", "sources.yml")

    # -------------------------------------------------------------------------
    # Raw inputs
    # -------------------------------------------------------------------------
    @property
    def data_raw(self) -> Path:
        return get_path("data", "raw")

    # -------------------------------------------------------------------------
    # Intermediate and processed outputs
    # -------------------------------------------------------------------------
    @property
    def interim_state_features(self) -> Path:
        return get_path("data", "interim", "state_features")

    @property
    def data_processed(self) -> Path:
        return get_path("data", "processed")

    @property
    def processed_neighborhoods(self) -> Path:
        return get_path("data", "processed", "neighborhoods")

    @property
    def processed_index(self) -> Path:
        return get_path("data", "processed", "index")

    @property
    def processed_analysis(self) -> Path:
        return get_path("data", "processed", "analysis")

    @property
    def processed_results(self) -> Path:
        return get_path("data", "processed", "results")

    @property
    def processed_validation(self) -> Path:
        return get_path("data", "processed", "validation")

    # -------------------------------------------------------------------------
    # Logs and reports
    # -------------------------------------------------------------------------
    @property
    def logs(self) -> Path:
        return get_path("logs")

    @property
    def reports(self) -> Path:
        return get_path("reports")

    @property
    def reports_tables(self) -> Path:
        return get_path("reports", "tables")


# Singleton instance for convenience
paths = Paths()


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Returns:
        The Path object for the directory.
    """
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p
